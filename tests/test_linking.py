"""Tests for the OAuth linking flow, the Discord OAuth client and the link store."""

from datetime import datetime, timedelta, timezone
import asyncio
from unittest.mock import AsyncMock, MagicMock
from urllib.parse import parse_qs, urlparse

import aiohttp
import asyncpg
import pytest

from circle.billing.client import BillingQueryError
from circle.billing.entitlement import EntitlementEvaluator
from circle.discord_bot.roles import RoleAction, RoleSynchronizer
from circle.linking.flow import LinkingError, LinkingFlow, LinkStep, RelinkError
from circle.linking.oauth import DiscordOAuthClient, OAuthError
from circle.linking.state import StateSigner
from circle.linking.store import IdentityLinkStore, LinkCode

from conftest import make_pool

BASE = "https://members.example.com"


@pytest.fixture
def oauth():
    client = MagicMock(spec=DiscordOAuthClient)
    client.authorize_url.side_effect = lambda redirect, state: f"https://discord.test/auth?state={state}"
    client.exchange_code.return_value = "access-token"
    client.fetch_identity.return_value = "disc_42"
    return client


@pytest.fixture
def store():
    mock = MagicMock(spec=IdentityLinkStore)
    mock.get_link_code.return_value = None
    return mock


@pytest.fixture
def evaluator():
    mock = MagicMock(spec=EntitlementEvaluator)
    mock.is_entitled.return_value = True
    return mock


@pytest.fixture
def roles():
    mock = MagicMock(spec=RoleSynchronizer)
    mock.ensure_role.return_value = RoleAction.ADD
    return mock


@pytest.fixture
def flow(oauth, billing, store, evaluator, roles):
    billing.retrieve_checkout_session.return_value = {"id": "cs_1", "customer": "cus_1"}
    return LinkingFlow(oauth, StateSigner("state-secret"), billing, store, evaluator, roles)


def _state_from(url: str) -> str:
    return parse_qs(urlparse(url).query)["state"][0]


class TestLinkingFlow:
    def test_start_requires_code(self, flow):
        with pytest.raises(LinkingError) as exc_info:
            flow.start("", BASE)
        assert exc_info.value.step is LinkStep.START
        assert exc_info.value.is_client_error

    def test_start_uses_callback_redirect(self, flow, oauth):
        flow.start("cs_1", BASE)
        redirect, _state = oauth.authorize_url.call_args.args
        assert redirect == f"{BASE}/oauth/discord/callback"

    @pytest.mark.asyncio
    async def test_complete_happy_path(self, flow, oauth, billing, store, evaluator, roles):
        state = _state_from(flow.start("cs_1", BASE))

        outcome = await flow.complete("oauth-code", state, BASE)

        assert outcome.discord_user_id == "disc_42"
        assert outcome.customer_id == "cus_1"
        assert outcome.entitled is True
        assert outcome.role_action is RoleAction.ADD
        oauth.exchange_code.assert_awaited_once_with("oauth-code", f"{BASE}/oauth/discord/callback")
        billing.retrieve_checkout_session.assert_awaited_once_with("cs_1")
        store.record_link_code.assert_awaited_once_with("cs_1", "cus_1")
        store.upsert_link.assert_awaited_once_with("disc_42", "cus_1")
        store.mark_link_code_used.assert_awaited_once_with("cs_1")
        roles.ensure_role.assert_awaited_once_with("disc_42", True, "oauth link entitle=True")
        store.mark_synced.assert_awaited_once_with("disc_42")

    @pytest.mark.asyncio
    async def test_tampered_state_is_client_error(self, flow, oauth):
        state = _state_from(flow.start("cs_1", BASE))

        with pytest.raises(LinkingError) as exc_info:
            await flow.complete("oauth-code", state[:-2] + "xx", BASE)

        assert exc_info.value.step is LinkStep.CALLBACK_RECEIVED
        assert exc_info.value.is_client_error
        oauth.exchange_code.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_code_is_client_error(self, flow):
        with pytest.raises(LinkingError) as exc_info:
            await flow.complete("", "state", BASE)
        assert exc_info.value.step is LinkStep.CALLBACK_RECEIVED

    @pytest.mark.asyncio
    async def test_token_exchange_failure_not_retried(self, flow, oauth, store):
        oauth.exchange_code.side_effect = OAuthError("400 invalid_grant")
        state = _state_from(flow.start("cs_1", BASE))

        with pytest.raises(LinkingError) as exc_info:
            await flow.complete("oauth-code", state, BASE)

        assert exc_info.value.step is LinkStep.TOKEN_EXCHANGED
        assert not exc_info.value.is_client_error
        assert oauth.exchange_code.await_count == 1
        store.upsert_link.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_session_without_customer_fails_before_persisting(self, flow, billing, store):
        billing.retrieve_checkout_session.return_value = {"id": "cs_1", "customer": None}
        state = _state_from(flow.start("cs_1", BASE))

        with pytest.raises(LinkingError) as exc_info:
            await flow.complete("oauth-code", state, BASE)

        assert exc_info.value.step is LinkStep.LINK_PERSISTED
        store.upsert_link.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_entitlement_failure_reported_at_role_step(self, flow, evaluator, store, roles):
        evaluator.is_entitled.side_effect = BillingQueryError("stripe down")
        state = _state_from(flow.start("cs_1", BASE))

        with pytest.raises(LinkingError) as exc_info:
            await flow.complete("oauth-code", state, BASE)

        assert exc_info.value.step is LinkStep.ROLE_SYNCED
        store.upsert_link.assert_awaited_once()
        roles.ensure_role.assert_not_awaited()
        store.mark_synced.assert_not_awaited()

    @pytest.mark.parametrize(
        "error",
        [
            aiohttp.ClientConnectionError("connection reset"),
            asyncio.TimeoutError(),
            asyncpg.InterfaceError("pool is closing"),
        ],
    )
    @pytest.mark.asyncio
    async def test_transport_errors_become_linking_errors(self, flow, roles, store, error):
        roles.ensure_role.side_effect = error
        state = _state_from(flow.start("cs_1", BASE))

        with pytest.raises(LinkingError) as exc_info:
            await flow.complete("oauth-code", state, BASE)

        assert exc_info.value.step is LinkStep.ROLE_SYNCED
        assert not exc_info.value.is_client_error
        store.mark_synced.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_expired_link_code_still_links(self, flow, store, caplog):
        created = datetime(2026, 1, 1, tzinfo=timezone.utc)
        store.get_link_code.return_value = LinkCode(
            code="cs_1",
            customer_id="cus_1",
            created_at=created,
            expires_at=created + timedelta(days=14),
            used=True,
            used_at=created,
        )
        state = _state_from(flow.start("cs_1", BASE))

        with caplog.at_level("INFO", logger="circle.linking.flow"):
            outcome = await flow.complete("oauth-code", state, BASE)

        assert outcome.customer_id == "cus_1"
        store.get_link_code.assert_awaited_once_with("cs_1")
        store.upsert_link.assert_awaited_once_with("disc_42", "cus_1")
        assert "used=True, expired=True" in caplog.text


class TestRelinkByEmail:
    @pytest.mark.asyncio
    async def test_redirects_to_start_with_latest_session(self, flow, billing):
        billing.find_customer_by_email.return_value = {"id": "cus_1"}
        billing.list_subscriptions.return_value = [{"id": "sub_1", "status": "active"}]
        billing.latest_checkout_session.return_value = {"id": "cs_latest"}

        url = await flow.relink_by_email(" member@example.com ", BASE + "/")

        assert url == f"{BASE}/oauth/discord/start?code=cs_latest"
        billing.find_customer_by_email.assert_awaited_once_with("member@example.com")
        billing.list_subscriptions.assert_awaited_once_with("cus_1", status="active")
        billing.latest_checkout_session.assert_awaited_once_with("cus_1")

    @pytest.mark.asyncio
    async def test_unknown_customer_is_404(self, flow, billing):
        billing.find_customer_by_email.return_value = None

        with pytest.raises(RelinkError) as exc_info:
            await flow.relink_by_email("ghost@example.com", BASE)

        assert exc_info.value.status == 404
        billing.list_subscriptions.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_active_subscription_is_400(self, flow, billing):
        billing.find_customer_by_email.return_value = {"id": "cus_1"}
        billing.list_subscriptions.return_value = []

        with pytest.raises(RelinkError) as exc_info:
            await flow.relink_by_email("lapsed@example.com", BASE)

        assert exc_info.value.status == 400
        billing.latest_checkout_session.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_checkout_session_is_500(self, flow, billing):
        billing.find_customer_by_email.return_value = {"id": "cus_1"}
        billing.list_subscriptions.return_value = [{"id": "sub_1", "status": "active"}]
        billing.latest_checkout_session.return_value = None

        with pytest.raises(RelinkError) as exc_info:
            await flow.relink_by_email("member@example.com", BASE)

        assert exc_info.value.status == 500

    @pytest.mark.asyncio
    async def test_billing_failure_propagates(self, flow, billing):
        billing.find_customer_by_email.side_effect = BillingQueryError("stripe down")

        with pytest.raises(BillingQueryError):
            await flow.relink_by_email("member@example.com", BASE)


class TestDiscordOAuthClient:
    def test_authorize_url_requests_identify_only(self):
        client = DiscordOAuthClient("client-1", "secret")
        url = client.authorize_url(f"{BASE}/oauth/discord/callback", "st4te")

        query = parse_qs(urlparse(url).query)
        assert url.startswith("https://discord.com/api/oauth2/authorize?")
        assert query["scope"] == ["identify"]
        assert query["response_type"] == ["code"]
        assert query["client_id"] == ["client-1"]
        assert query["state"] == ["st4te"]
        assert query["redirect_uri"] == [f"{BASE}/oauth/discord/callback"]

    @pytest.mark.asyncio
    async def test_identity_without_id_is_fatal(self):
        client = DiscordOAuthClient("client-1", "secret")
        client._request = AsyncMock(return_value={"username": "someone"})

        with pytest.raises(OAuthError, match="discord user id missing"):
            await client.fetch_identity("token")

    @pytest.mark.asyncio
    async def test_exchange_without_access_token_is_fatal(self):
        client = DiscordOAuthClient("client-1", "secret")
        client._request = AsyncMock(return_value={"error": "invalid_grant"})

        with pytest.raises(OAuthError):
            await client.exchange_code("code", "https://x/cb")


class TestIdentityLinkStore:
    @pytest.mark.asyncio
    async def test_upsert_link_is_column_scoped(self):
        pool, conn = make_pool()
        store = IdentityLinkStore(pool)

        await store.upsert_link("disc_42", "cus_1")

        sql, *args = conn.execute.call_args.args
        assert "ON CONFLICT (discord_user_id) DO UPDATE" in sql
        assert "last_sync_at" not in sql.split("DO UPDATE")[1]
        assert args == ["disc_42", "cus_1"]

    @pytest.mark.asyncio
    async def test_find_links_empty_is_valid(self):
        pool, conn = make_pool()
        conn.fetch.return_value = []

        assert await IdentityLinkStore(pool).find_links_by_billing_identity("cus_1") == []

    @pytest.mark.asyncio
    async def test_find_links_returns_ids(self):
        pool, conn = make_pool()
        conn.fetch.return_value = [{"discord_user_id": "a"}, {"discord_user_id": "b"}]

        assert await IdentityLinkStore(pool).find_links_by_billing_identity("cus_1") == ["a", "b"]

    @pytest.mark.asyncio
    async def test_record_link_code_never_resets_first_write(self):
        pool, conn = make_pool()
        store = IdentityLinkStore(pool, link_code_ttl_days=14)

        await store.record_link_code("cs_1", "cus_1")

        sql, code, customer, ttl = conn.execute.call_args.args
        update_clause = sql.split("DO UPDATE SET")[1]
        assert "customer_id = EXCLUDED.customer_id" in update_clause
        for column in ("created_at", "expires_at", "used"):
            assert column not in update_clause
        assert (code, customer, ttl) == ("cs_1", "cus_1", timedelta(days=14))

    @pytest.mark.asyncio
    async def test_get_link_code_maps_row(self):
        pool, conn = make_pool()
        created = datetime(2026, 1, 1, tzinfo=timezone.utc)
        conn.fetchrow.return_value = {
            "code": "cs_1",
            "customer_id": "cus_1",
            "created_at": created,
            "expires_at": created + timedelta(days=14),
            "used": False,
            "used_at": None,
        }

        link_code = await IdentityLinkStore(pool).get_link_code("cs_1")

        assert isinstance(link_code, LinkCode)
        assert link_code.is_expired(created + timedelta(days=13)) is False
        assert link_code.is_expired(created + timedelta(days=14)) is True

    @pytest.mark.asyncio
    async def test_get_link_code_missing(self):
        pool, conn = make_pool()
        conn.fetchrow.return_value = None

        assert await IdentityLinkStore(pool).get_link_code("cs_missing") is None
