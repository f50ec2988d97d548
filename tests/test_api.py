"""Tests for the HTTP surface: chat, streaming, tiers, credits, grants, health, metrics."""

from datetime import datetime, timezone

import pytest
from httpx import AsyncClient

from tiergate.api.v1.ai import _prime
from tiergate.core.exceptions import UpstreamAuthError, UpstreamRateLimited, UpstreamUnavailable
from tiergate.gateway.types import Backend

from tests.conftest import make_result


def _headers(account_id: str) -> dict[str, str]:
    return {"X-Account-Id": account_id}


def _chat_body(**overrides) -> dict:
    body = {"messages": [{"role": "user", "content": "Hello there"}], "tier": "fast", "feature": "chat"}
    body.update(overrides)
    return body


@pytest.fixture
async def account(make_account) -> str:
    # Fresh window so the wall-clock ledger does not reset it mid-test
    return await make_account("api-user", plan="free", allowance=50, consumed=0, reset_at=datetime.now(timezone.utc))


@pytest.mark.asyncio
async def test_health(client: AsyncClient):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_metrics(client: AsyncClient):
    response = await client.get("/metrics")
    assert response.status_code == 200
    assert "tiergate_upstream_requests_total" in response.text


@pytest.mark.asyncio
async def test_metrics_label_by_route_template(client: AsyncClient):
    await client.get("/health")
    await client.get("/no/such/page/123")

    text = (await client.get("/metrics")).text

    assert 'path="/health"' in text
    assert 'path="unmatched"' in text
    assert "/no/such/page/123" not in text


@pytest.mark.asyncio
async def test_tiers(client: AsyncClient):
    response = await client.get("/api/v1/ai/tiers")
    assert response.status_code == 200
    tiers = {t["tier"]: t for t in response.json()}
    assert set(tiers) == {"super-smart", "pro-smart", "normal", "fast"}
    assert tiers["super-smart"]["requires_elevated_plan"] is True
    assert tiers["pro-smart"]["credits"] == 5


@pytest.mark.asyncio
async def test_chat_success_debits_credits(client: AsyncClient, adapters, account):
    adapters[Backend.GROQ].outcomes = [make_result("Hi!", model="kimi")]

    response = await client.post("/api/v1/ai/chat", json=_chat_body(estimated_words=1000), headers=_headers(account))

    assert response.status_code == 200
    data = response.json()
    assert data["content"] == "Hi!"
    assert data["backend"] == "groq"
    assert data["tier"] == "fast"
    assert data["fell_back"] is False
    assert data["credits_charged"] == 3
    assert data["credits_remaining"] == 47

    balance = await client.get("/api/v1/credits", headers=_headers(account))
    assert balance.json()["consumed"] == 3


@pytest.mark.asyncio
async def test_chat_reports_fallback(client: AsyncClient, adapters, account):
    adapters[Backend.GROK].outcomes = [UpstreamUnavailable("down", backend="grok")]
    adapters[Backend.GEMINI].outcomes = [make_result("from gemini")]

    response = await client.post("/api/v1/ai/chat", json=_chat_body(tier="normal"), headers=_headers(account))

    assert response.status_code == 200
    assert response.json()["fell_back"] is True


@pytest.mark.asyncio
async def test_insufficient_credits_402(client: AsyncClient, adapters, make_account):
    account_id = await make_account("broke", allowance=50, consumed=49, reset_at=datetime.now(timezone.utc))

    response = await client.post("/api/v1/ai/chat", json=_chat_body(estimated_words=1000), headers=_headers(account_id))

    assert response.status_code == 402
    data = response.json()
    assert data["code"] == "insufficient_credits"
    assert data["credits_needed"] == 3
    assert data["credits_remaining"] == 1
    assert adapters[Backend.GROQ].calls == []


@pytest.mark.asyncio
async def test_plan_restricted_403(client: AsyncClient, account):
    response = await client.post("/api/v1/ai/chat", json=_chat_body(tier="super-smart"), headers=_headers(account))
    assert response.status_code == 403
    assert response.json()["code"] == "plan_restricted"


@pytest.mark.asyncio
async def test_unknown_account_404(client: AsyncClient):
    response = await client.post("/api/v1/ai/chat", json=_chat_body(), headers=_headers("nobody"))
    assert response.status_code == 404
    assert response.json()["code"] == "account_not_found"


@pytest.mark.asyncio
async def test_missing_account_header_422(client: AsyncClient):
    response = await client.post("/api/v1/ai/chat", json=_chat_body())
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_system_only_messages_422(client: AsyncClient, account):
    body = _chat_body(messages=[{"role": "system", "content": "rules only"}])
    response = await client.post("/api/v1/ai/chat", json=body, headers=_headers(account))
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_upstream_auth_error_502_not_charged(client: AsyncClient, adapters, account):
    adapters[Backend.GROQ].outcomes = [UpstreamAuthError("invalid key", backend="groq", upstream_status=401)]

    response = await client.post("/api/v1/ai/chat", json=_chat_body(), headers=_headers(account))

    assert response.status_code == 502
    assert response.json()["code"] == "upstream_auth"
    balance = await client.get("/api/v1/credits", headers=_headers(account))
    assert balance.json()["consumed"] == 0


@pytest.mark.asyncio
async def test_failed_failover_503(client: AsyncClient, adapters, account):
    adapters[Backend.GROQ].outcomes = [UpstreamUnavailable("down", backend="groq")]
    adapters[Backend.GEMINI].outcomes = [UpstreamRateLimited("busy", backend="gemini", upstream_status=429)]

    response = await client.post("/api/v1/ai/chat", json=_chat_body(), headers=_headers(account))

    assert response.status_code == 503
    assert response.json()["code"] == "service_unavailable"


@pytest.mark.asyncio
async def test_stream_returns_plain_text(client: AsyncClient, adapters, account):
    adapters[Backend.GROQ].streams = [["Hel", "lo ", "wörld"]]

    response = await client.post(
        "/api/v1/ai/chat", json=_chat_body(stream=True, estimated_words=1000), headers=_headers(account)
    )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    assert response.text == "Hello wörld"

    balance = await client.get("/api/v1/credits", headers=_headers(account))
    assert balance.json()["consumed"] == 3


@pytest.mark.asyncio
async def test_stream_failure_before_output_is_json_error(client: AsyncClient, adapters, account):
    adapters[Backend.GROQ].streams = [[UpstreamUnavailable("down", backend="groq")]]
    adapters[Backend.GEMINI].streams = [[UpstreamUnavailable("down too", backend="gemini")]]

    response = await client.post("/api/v1/ai/chat", json=_chat_body(stream=True), headers=_headers(account))

    assert response.status_code == 503
    assert response.json()["code"] == "service_unavailable"
    balance = await client.get("/api/v1/credits", headers=_headers(account))
    assert balance.json()["consumed"] == 0


@pytest.mark.asyncio
async def test_stream_cut_short_after_first_chunk_aborts_response(client: AsyncClient, adapters, account):
    adapters[Backend.GROQ].streams = [["partial", UpstreamRateLimited("429", backend="groq")]]

    # Headers are already out, so the transfer is aborted instead of ending cleanly
    with pytest.raises(Exception):
        await client.post("/api/v1/ai/chat", json=_chat_body(stream=True), headers=_headers(account))

    assert adapters[Backend.GEMINI].calls == []
    balance = await client.get("/api/v1/credits", headers=_headers(account))
    assert balance.json()["consumed"] == 0


@pytest.mark.asyncio
async def test_primed_body_reraises_mid_stream_error():
    async def source():
        yield "partial"
        raise UpstreamRateLimited("429", backend="groq")

    received = []
    with pytest.raises(UpstreamRateLimited):
        async for chunk in await _prime(source()):
            received.append(chunk)
    assert received == ["partial"]


@pytest.mark.asyncio
async def test_credits_balance(client: AsyncClient, make_account):
    account_id = await make_account("pro-user", plan="pro", allowance=3500, consumed=100, reset_at=datetime.now(timezone.utc))

    response = await client.get("/api/v1/credits", headers=_headers(account_id))

    assert response.status_code == 200
    data = response.json()
    assert data["plan"] == "pro"
    assert data["remaining"] == 3400
    assert data["resets_at"] is not None


@pytest.mark.asyncio
async def test_credits_unknown_account(client: AsyncClient):
    response = await client.get("/api/v1/credits", headers=_headers("ghost"))
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_grant_credits(client: AsyncClient, make_account):
    account_id = await make_account("rewarded", allowance=50, consumed=30, reset_at=datetime.now(timezone.utc))

    response = await client.post(
        "/api/v1/credits/grant", json={"source": "rewarded_ad", "amount": 10}, headers=_headers(account_id)
    )

    assert response.status_code == 200
    assert response.json() == {"credited": 10, "remaining": 30, "source": "rewarded_ad"}


@pytest.mark.asyncio
async def test_grant_rewarded_ad_on_paid_plan_400(client: AsyncClient, make_account):
    account_id = await make_account("paid", plan="pro", allowance=3500, reset_at=datetime.now(timezone.utc))

    response = await client.post("/api/v1/credits/grant", json={"source": "rewarded_ad"}, headers=_headers(account_id))

    assert response.status_code == 400
    assert response.json()["code"] == "grant_rejected"


@pytest.mark.asyncio
async def test_grant_amount_out_of_range_422(client: AsyncClient, account):
    response = await client.post(
        "/api/v1/credits/grant", json={"source": "bonus", "amount": 500}, headers=_headers(account)
    )
    assert response.status_code == 422
