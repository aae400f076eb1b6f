"""
Tests for the OpenID Connect HTTP endpoints.

Drives full browser round trips through the FastAPI app with the spy
provider standing in for the identity provider.
"""

from oidc_login.core.domain import RegistrationMode
from oidc_login.core.hooks import HookPoint
from tests.conftest import FakeProviderClient, make_tokens, state_from_location


def start_login(test_client, provider_id="generic", **params):
    response = test_client.get(
        f"/openid-connect/{provider_id}/login", params=params, follow_redirects=False
    )
    assert response.status_code == 302
    return state_from_location(response)


def callback(test_client, provider_id="generic", **params):
    return test_client.get(
        f"/openid-connect/{provider_id}", params=params, follow_redirects=False
    )


class TestStartLogin:
    """Tests for GET /openid-connect/{client_name}/login."""

    def test_redirects_to_provider(self, test_client, provider):
        response = test_client.get(
            "/openid-connect/generic/login", follow_redirects=False
        )

        assert response.status_code == 302
        assert response.headers["location"].startswith("https://idp.example.com/authorize")
        state, nonce = provider.authorization_requests[0]
        assert state == state_from_location(response)
        assert nonce

    def test_unknown_provider(self, test_client):
        response = test_client.get("/openid-connect/ghost/login", follow_redirects=False)

        assert response.status_code == 404
        assert "Unknown provider: ghost" in response.json()["detail"]

    def test_each_login_gets_a_new_state(self, test_client):
        first = start_login(test_client)
        second = start_login(test_client)

        assert first != second


class TestCallbackAccess:
    """Tests for the state token gate on the callback."""

    def test_missing_state_is_forbidden(self, test_client, provider):
        start_login(test_client)

        response = callback(test_client, code="abc")

        assert response.status_code == 403
        assert response.json() == {"status": "error", "message": "Access denied"}
        assert provider.exchanged_codes == []

    def test_wrong_state_is_forbidden(self, test_client, provider):
        start_login(test_client)

        response = callback(test_client, state="forged", code="abc")

        assert response.status_code == 403
        assert provider.exchanged_codes == []

    def test_state_from_another_session_is_forbidden(self, test_client, provider):
        state = start_login(test_client)
        test_client.cookies.clear()

        response = callback(test_client, state=state, code="abc")

        assert response.status_code == 403
        assert provider.exchanged_codes == []

    def test_replayed_callback_is_forbidden(self, test_client, provider):
        state = start_login(test_client)
        assert callback(test_client, state=state, code="abc").status_code == 302

        response = callback(test_client, state=state, code="abc")

        assert response.status_code == 403
        assert provider.exchanged_codes == ["abc"]

    def test_callback_without_code_is_not_found(self, test_client, provider):
        state = start_login(test_client)

        response = callback(test_client, state=state)

        assert response.status_code == 404
        assert response.json() == {"status": "error", "message": "Not found"}
        assert provider.exchanged_codes == []


class TestLoginRoundTrip:
    """Tests for complete login flows."""

    def test_first_login_creates_account(self, test_client, provider):
        state = start_login(test_client, destination="user/5")

        response = callback(test_client, state=state, code="abc")

        assert response.status_code == 302
        assert response.headers["location"] == "/user/5"
        assert "SSOLoggedInState=true" in response.headers["set-cookie"]
        assert provider.exchanged_codes == ["abc"]

        me = test_client.get("/user")
        assert me.status_code == 200
        body = me.json()["user"]
        assert body["name"] == "ada"
        assert body["mail"] == "ada@example.com"
        assert body["properties"] == {"timezone": "Europe/London"}

    def test_nonce_is_passed_to_exchange(self, test_client, provider):
        state = start_login(test_client)

        callback(test_client, state=state, code="abc")

        assert provider.exchange_nonces == [provider.authorization_requests[0][1]]

    def test_second_login_reuses_account(self, test_client):
        state = start_login(test_client)
        callback(test_client, state=state, code="abc")
        first_uid = test_client.get("/user").json()["user"]["uid"]
        test_client.post("/logout")

        state = start_login(test_client)
        callback(test_client, state=state, code="def")

        assert test_client.get("/user").json()["user"]["uid"] == first_uid

    def test_external_destination_is_ignored(self, test_client):
        state = start_login(test_client, destination="https://evil.example.com/")

        response = callback(test_client, state=state, code="abc")

        assert response.headers["location"] == "/user"

    def test_admin_only_registration(self, test_client, oidc_config):
        """Test a blocked registration redirects home with one notice."""
        oidc_config.registration_mode = RegistrationMode.ADMINISTRATORS_ONLY
        state = start_login(test_client)

        response = callback(test_client, state=state, code="abc")

        assert response.status_code == 302
        assert response.headers["location"] == "/user"
        assert "set-cookie" not in response.headers or (
            "SSOLoggedInState" not in response.headers["set-cookie"]
        )
        assert test_client.get("/messages").json()["messages"] == [
            {"level": "error", "text": "Only administrators can register new accounts."}
        ]
        assert test_client.get("/user").status_code == 401

    def test_user_cancelled(self, test_client, provider):
        state = start_login(test_client, destination="user/5")

        response = callback(test_client, state=state, error="login_required")

        assert response.headers["location"] == "/user/5"
        assert provider.exchanged_codes == []
        assert test_client.get("/messages").json()["messages"] == [
            {"level": "warning", "text": "Logging in with Generic has been canceled."}
        ]

    def test_exchange_failure(self, test_client, provider):
        provider.tokens = None
        state = start_login(test_client)

        response = callback(test_client, state=state, code="abc")

        assert response.status_code == 302
        assert response.headers["location"] == "/user"
        assert test_client.get("/messages").json()["messages"] == []

    def test_login_moves_session_to_new_id(self, test_client, session_store):
        state = start_login(test_client)
        before = set(session_store._sessions)

        callback(test_client, state=state, code="abc")

        after = set(session_store._sessions)
        assert len(before) == 1
        assert len(after) == 1
        assert before.isdisjoint(after)
        assert test_client.get("/user").status_code == 200

    def test_post_authorize_error_keeps_user_logged_out(self, test_client, hooks):
        state = start_login(test_client)
        callback(test_client, state=state, code="abc")
        test_client.post("/logout")

        def explode(context):
            raise RuntimeError("boom")

        hooks.register(HookPoint.POST_AUTHORIZE, explode)
        state = start_login(test_client)
        response = callback(test_client, state=state, code="def")

        assert response.status_code == 302
        assert "SSOLoggedInState=true" not in response.headers.get("set-cookie", "")
        assert test_client.get("/user").status_code == 401

    def test_userinfo_alter_error_redirects_to_destination(
        self, test_client, hooks, repository
    ):
        def explode(userinfo, context):
            raise RuntimeError("boom")

        hooks.register(HookPoint.USERINFO_ALTER, explode)
        state = start_login(test_client, destination="user/5")

        response = callback(test_client, state=state, code="abc")

        assert response.status_code == 302
        assert response.headers["location"] == "/user/5"
        assert test_client.get("/user").status_code == 401
        assert repository._authmap == {}


class TestConnect:
    """Tests for connecting providers to the logged-in account."""

    def login(self, test_client):
        state = start_login(test_client)
        callback(test_client, state=state, code="abc")
        return test_client.get("/user").json()["user"]["uid"]

    def test_connect_requires_login(self, test_client):
        response = test_client.get(
            "/openid-connect/generic/connect", follow_redirects=False
        )

        assert response.status_code == 401

    def test_connect_second_provider(self, test_client, registry):
        other = FakeProviderClient(
            name="other",
            label="Other",
            tokens=make_tokens("o-1"),
            userinfo={"sub": "o-1", "email": "ada@other.example.com"},
        )
        registry.register("other", lambda: other)
        self.login(test_client)

        response = test_client.get("/openid-connect/other/connect", follow_redirects=False)
        state = state_from_location(response)
        done = callback(test_client, "other", state=state, code="xyz")

        assert done.status_code == 302
        assert test_client.get("/openid-connect/connections").json()["connections"] == [
            "generic",
            "other",
        ]
        messages = test_client.get("/messages").json()["messages"]
        assert {"level": "status", "text": "Account successfully connected with Other."} in (
            messages
        )

    def test_connect_subject_of_another_account(self, test_client, registry):
        other = FakeProviderClient(
            name="other",
            label="Other",
            tokens=make_tokens("o-1"),
            userinfo={"sub": "o-1", "email": "ada@other.example.com"},
        )
        registry.register("other", lambda: other)

        # Somebody else logs in with the "other" subject first
        state = start_login(test_client, "other")
        callback(test_client, "other", state=state, code="first")
        owner_uid = test_client.get("/user").json()["user"]["uid"]
        test_client.post("/logout")

        uid = self.login(test_client)
        response = test_client.get("/openid-connect/other/connect", follow_redirects=False)
        callback(test_client, "other", state=state_from_location(response), code="second")

        assert uid != owner_uid
        assert test_client.get("/openid-connect/connections").json()["connections"] == [
            "generic"
        ]


class TestDisconnect:
    """Tests for DELETE /openid-connect/{client_name}."""

    def test_disconnect(self, test_client):
        state = start_login(test_client)
        callback(test_client, state=state, code="abc")

        response = test_client.delete("/openid-connect/generic")

        assert response.status_code == 200
        assert test_client.get("/openid-connect/connections").json()["connections"] == []

    def test_disconnect_unknown_connection(self, test_client):
        state = start_login(test_client)
        callback(test_client, state=state, code="abc")

        response = test_client.delete("/openid-connect/other")

        assert response.status_code == 404

    def test_disconnect_requires_login(self, test_client):
        assert test_client.delete("/openid-connect/generic").status_code == 401


class TestLogout:
    """Tests for POST /logout."""

    def test_logout_ends_session(self, test_client):
        state = start_login(test_client)
        callback(test_client, state=state, code="abc")

        response = test_client.post("/logout")

        assert response.status_code == 200
        assert test_client.get("/user").status_code == 401


class TestSessionHousekeeping:
    """Tests that requests leave no empty server-side sessions behind."""

    def test_anonymous_request_stores_nothing(self, test_client, session_store):
        assert test_client.get("/messages").status_code == 200

        assert session_store._sessions == {}
        assert session_store._locks == {}

    def test_forbidden_callback_on_fresh_session_stores_nothing(
        self, test_client, session_store
    ):
        response = callback(test_client, state="forged", code="abc")

        assert response.status_code == 403
        assert session_store._sessions == {}
        assert session_store._locks == {}

    def test_logout_drops_server_side_session(self, test_client, session_store):
        state = start_login(test_client)
        callback(test_client, state=state, code="abc")
        assert len(session_store._sessions) == 1

        test_client.post("/logout")

        assert session_store._sessions == {}
        assert session_store._locks == {}
