import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from hugin.llm import ChatCompletionError
from tests.fakes import FakeChatClient, FakeTaskClient, compose_reply, reply, timed_out


async def _request(app, method: str, path: str, **kwargs):
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http_client:
            return await http_client.request(method, path, **kwargs)


@pytest.mark.asyncio
async def test_health_reports_configured_services(client):
    res = await client.get("/health")
    assert res.status_code == 200
    assert res.json() == {"ok": True, "compose_enabled": True, "research_enabled": True}


@pytest.mark.asyncio
async def test_compose_returns_first_successful_model(app_factory):
    fake_chat = FakeChatClient(
        replies={
            "model-a": ChatCompletionError("OpenRouter model-a timed out after 40.0s"),
            "model-b": compose_reply("Prompt: find the CFO", "Sections: answer, sources"),
        }
    )
    app, _, _, _ = app_factory(fake_chat=fake_chat)
    res = await _request(app, "POST", "/compose", json={"prompt": "Find the CFO", "companyBlock": "Acme AS"})
    assert res.status_code == 200
    assert res.json() == {
        "input": "Prompt: find the CFO",
        "outputSchema": "Sections: answer, sources",
        "model": "model-b",
    }
    assert [call["model"] for call in fake_chat.calls] == ["model-a", "model-b"]
    assert "Acme AS" in fake_chat.calls[0]["user"]


@pytest.mark.asyncio
async def test_compose_all_models_failed(app_factory):
    app, _, _, _ = app_factory(fake_chat=FakeChatClient(replies={}))
    res = await _request(app, "POST", "/compose", json={"prompt": "Find the CFO"})
    assert res.status_code == 502
    body = res.json()
    assert body["error"] == "All models failed"
    assert body["code"] == "compose_exhausted"
    assert "model-c" in body["details"]


@pytest.mark.asyncio
async def test_compose_empty_prompt_is_rejected(client):
    res = await client.post("/compose", json={"prompt": "  "})
    assert res.status_code == 400
    assert client.fake_chat.calls == []


@pytest.mark.asyncio
async def test_compose_without_key(app_factory):
    app, _, _, _ = app_factory(openrouter_api_key=None)
    res = await _request(app, "POST", "/compose", json={"prompt": "Find the CFO"})
    assert res.status_code == 500
    assert res.json()["code"] == "not_configured"


@pytest.mark.asyncio
async def test_create_run_returns_queued(client):
    res = await client.post("/runs", json={"companyName": "Acme AS", "orgNumber": "123", "processor": "core"})
    assert res.status_code == 202
    assert res.json() == {"runId": "run_123", "status": "queued"}
    payload = client.fake_tasks.calls[0]["payload"]
    assert payload["processor"] == "core"
    assert "Company: Acme AS" in payload["input"]


@pytest.mark.asyncio
async def test_create_run_requires_company(client):
    res = await client.post("/runs", json={"prompt": "x"})
    assert res.status_code == 400
    assert client.fake_tasks.calls == []


@pytest.mark.asyncio
async def test_create_run_rate_limited_sets_retry_after(app_factory):
    fake = FakeTaskClient(create_reply=reply(429, {"error": "slow"}, headers={"Retry-After": "30"}))
    app, _, _, _ = app_factory(fake_tasks=fake)
    res = await _request(app, "POST", "/runs", json={"companyName": "Acme"})
    assert res.status_code == 429
    assert res.headers["retry-after"] == "30"
    assert res.json()["code"] == "rate_limited"
    assert res.json()["retryAfterSec"] == 30


@pytest.mark.asyncio
async def test_create_run_upstream_failure_is_502(app_factory):
    app, _, _, _ = app_factory(fake_tasks=FakeTaskClient(create_reply=reply(503, {"error": "down"})))
    res = await _request(app, "POST", "/runs", json={"companyName": "Acme"})
    assert res.status_code == 502
    assert res.json()["error"] == "Failed to create task run"


@pytest.mark.asyncio
async def test_poll_pending_is_202_with_retry_after(client):
    res = await client.get("/runs", params={"runId": "run_123", "waitSec": "20", "generation": 4})
    assert res.status_code == 202
    assert res.headers["retry-after"] == "10"
    assert res.json() == {"runId": "run_123", "status": "queued", "generation": 4, "retryAfterSeconds": 10}


@pytest.mark.asyncio
async def test_poll_completed_returns_normalized_result(app_factory):
    fake = FakeTaskClient(
        results=[
            reply(
                200,
                {
                    "run": {"run_id": "run_123", "status": "completed"},
                    "output": {
                        "type": "text",
                        "content": ["Summary [1]", {"text": "Details [2]"}],
                        "basis": [
                            {"citations": [{"url": "https://a.example", "title": "A"}]},
                            {"citations": [{"url": "https://b.example"}, {"url": "https://a.example"}]},
                        ],
                    },
                },
            )
        ]
    )
    app, _, _, _ = app_factory(fake_tasks=fake)
    res = await _request(app, "GET", "/runs", params={"runId": "run_123"})
    assert res.status_code == 200
    body = res.json()
    assert body["status"] == "completed"
    assert body["normalized"]["text"] == "Summary [1]\nDetails [2]"
    assert body["normalized"]["citations"] == [{"url": "https://a.example", "title": "A"}, {"url": "https://b.example"}]
    assert len(body["result"]["output"]["basis"]) == 2
    assert fake.ops() == ["result"]


@pytest.mark.asyncio
async def test_poll_stuck_includes_diagnostics(app_factory):
    fake = FakeTaskClient(
        results=[timed_out()],
        statuses=[reply(200, {"run_id": "run_123", "status": "queued", "processor": "pro", "created_at": "2024-05-01T11:56:45Z"})],
    )
    app, _, _, _ = app_factory(fake_tasks=fake)
    res = await _request(app, "GET", "/runs", params={"runId": "run_123", "waitSec": "20"})
    assert res.status_code == 202
    body = res.json()
    assert body["status"] == "stuck"
    assert body["diagnostics"] == {"elapsedSeconds": 195, "estimateSeconds": 180}


@pytest.mark.asyncio
async def test_poll_failed_run_is_terminal_error(app_factory):
    fake = FakeTaskClient(statuses=[reply(200, {"run_id": "run_123", "status": "failed", "error": "quota exceeded"})])
    app, _, _, _ = app_factory(fake_tasks=fake)
    res = await _request(app, "GET", "/runs", params={"runId": "run_123"})
    assert res.status_code == 200
    assert res.json()["status"] == "error"
    assert res.json()["error"] == "quota exceeded"


@pytest.mark.asyncio
async def test_poll_status_check_failure_stays_pending(app_factory):
    fake = FakeTaskClient(results=[reply(502, None, text="bad gateway")], statuses=[timed_out()])
    app, _, _, _ = app_factory(fake_tasks=fake)
    res = await _request(app, "GET", "/runs", params={"runId": "run_123", "waitSec": "0"})
    assert res.status_code == 202
    assert res.json()["status"] == "queued"
    assert res.json()["retryAfterSeconds"] == 5


@pytest.mark.asyncio
async def test_poll_requires_run_id(client):
    res = await client.get("/runs")
    assert res.status_code == 400


@pytest.mark.asyncio
async def test_search_clamps_payload(client):
    res = await client.post(
        "/search",
        json={
            "objective": "x" * 6000,
            "searchQueries": ["  a  ", "", "b", "c", "d", "e", "f"],
            "maxResults": 100,
            "maxCharsPerResult": 10,
            "processor": "ultra",
        },
    )
    assert res.status_code == 200
    payload = client.fake_tasks.calls[0]["payload"]
    assert len(payload["objective"]) == 5000
    assert payload["search_queries"] == ["a", "b", "c", "d", "e"]
    assert payload["max_results"] == 25
    assert payload["max_chars_per_result"] == 100
    assert payload["processor"] == "base"


@pytest.mark.asyncio
async def test_search_requires_objective_or_queries(client):
    res = await client.post("/search", json={"objective": " "})
    assert res.status_code == 400


@pytest.mark.asyncio
async def test_search_upstream_error_is_forwarded(app_factory):
    fake = FakeTaskClient(search_reply=reply(503, None, text="unavailable"))
    app, _, _, _ = app_factory(fake_tasks=fake)
    res = await _request(app, "POST", "/search", json={"objective": "CFO of Acme"})
    assert res.status_code == 503
    assert res.json() == {"error": "Parallel search failed", "status": 503, "details": "unavailable"}


@pytest.mark.asyncio
async def test_lifespan_closes_clients(app_factory):
    app, _, chat_client, task_client = app_factory()
    await _request(app, "GET", "/health")
    assert chat_client.closed
    assert task_client.closed


@pytest.mark.asyncio
async def test_submit_then_poll_until_completed(app_factory):
    fake = FakeTaskClient(
        results=[
            timed_out(),
            reply(200, {"output": {"content": "Kari Nordmann is CFO [1]", "basis": [{"citations": [{"url": "https://acme.no"}]}]}}),
        ]
    )
    app, _, _, _ = app_factory(fake_tasks=fake)
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http_client:
            created = await http_client.post("/runs", json={"companyName": "Acme AS"})
            assert created.status_code == 202
            run_id = created.json()["runId"]

            first = await http_client.get("/runs", params={"runId": run_id, "waitSec": "20"})
            assert first.status_code == 202
            assert first.json()["status"] == "queued"
            assert first.json()["retryAfterSeconds"] == 10

            second = await http_client.get("/runs", params={"runId": run_id, "waitSec": "20"})
            assert second.status_code == 200
            body = second.json()
            assert body["status"] == "completed"
            assert body["result"]["output"]["text"] == "Kari Nordmann is CFO [1]"
            assert body["normalized"]["citations"] == [{"url": "https://acme.no"}]
    assert fake.ops() == ["create", "result", "status", "result"]


@pytest.mark.asyncio
@pytest.mark.parametrize("wait", ["inf", "1e400"])
async def test_poll_non_finite_wait_falls_back_to_default(client, wait):
    res = await client.get("/runs", params={"runId": "run_123", "waitSec": wait})
    assert res.status_code == 202
    assert res.json()["status"] == "queued"
    assert res.json()["retryAfterSeconds"] == 12
    assert client.fake_tasks.calls[0]["wait_s"] == 25


@pytest.mark.asyncio
async def test_create_run_rate_limited_with_infinite_retry_after(app_factory):
    fake = FakeTaskClient(create_reply=reply(429, {"error": "slow"}, headers={"Retry-After": "inf"}))
    app, _, _, _ = app_factory(fake_tasks=fake)
    res = await _request(app, "POST", "/runs", json={"companyName": "Acme"})
    assert res.status_code == 429
    assert res.json()["code"] == "rate_limited"
    assert "retry-after" not in res.headers
