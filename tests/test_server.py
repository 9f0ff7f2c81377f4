"""Tests for the HTTP API, driven through httpx.ASGITransport or raw ASGI calls."""

from __future__ import annotations

import asyncio
import json
from urllib.parse import urlencode

import httpx
import pytest

from conftest import GPT, HAIKU, Pause, ScriptedFactory, outcome
from twinstream.transport.server import create_app


def parse_frames(body: str) -> list[dict]:
    events = []
    for frame in body.strip().split("\n\n"):
        for line in frame.split("\n"):
            if line.startswith("data: "):
                events.append(json.loads(line[6:]))
    return events


@pytest.fixture
async def client(ctx):
    transport = httpx.ASGITransport(app=create_app(ctx))
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


class TestCompare:
    async def test_post_streams_both_slots(self, client, ctx):
        response = await client.post(
            "/api/compare", json={"prompt": "Say hi", "modelId1": GPT, "modelId2": HAIKU}
        )
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.headers["x-request-id"]

        events = parse_frames(response.text)
        for slot in ("A", "B"):
            slot_events = [e for e in events if e["slot"] == slot]
            assert slot_events[0]["type"] == "start"
            assert slot_events[-1]["type"] == "complete"
            assert slot_events[-1]["data"]["isComplete"] is True
        text_a = "".join(e["data"]["delta"] for e in events if e["slot"] == "A" and e["type"] == "token")
        assert text_a == "Hi there"

        page = await ctx.history.list()
        assert page.total == 1
        assert page.items[0].request_id == response.headers["x-request-id"]

    async def test_frames_carry_sequence_ids(self, client):
        response = await client.get(
            "/api/compare/stream", params={"prompt": "Say hi", "model1": GPT, "model2": HAIKU}
        )
        assert response.status_code == 200
        ids = [
            int(line[4:])
            for line in response.text.split("\n")
            if line.startswith("id: ")
        ]
        assert ids == list(range(1, len(ids) + 1))
        assert len(ids) == len(parse_frames(response.text))

    async def test_unknown_model_rejected(self, client, ctx):
        response = await client.post(
            "/api/compare", json={"prompt": "Say hi", "modelId1": GPT, "modelId2": "nope"}
        )
        assert response.status_code == 422
        assert response.json()["detail"] == "Unknown model: nope"
        assert (await ctx.history.list()).total == 0

    async def test_empty_prompt_rejected(self, client):
        response = await client.get(
            "/api/compare/stream", params={"prompt": "  ", "model1": GPT, "model2": HAIKU}
        )
        assert response.status_code == 422

    async def test_missing_field_rejected(self, client):
        response = await client.post("/api/compare", json={"prompt": "Say hi"})
        assert response.status_code == 422

    async def test_prompt_length_limit(self, client, ctx):
        limit = ctx.config.engine.max_prompt_length
        response = await client.post(
            "/api/compare",
            json={"prompt": "x" * (limit + 1), "modelId1": GPT, "modelId2": HAIKU},
        )
        assert response.status_code == 422
        assert str(limit) in response.json()["detail"]


    async def test_client_disconnect_commits_partial_record(self, ctx):
        ctx.orchestrator.backend_factory = ScriptedFactory(
            {GPT: ["Hi", Pause()], HAIKU: ["Hel", Pause()]}
        )
        committed = asyncio.Event()

        async def on_commit(outcome, record_id):
            committed.set()

        ctx.orchestrator.on_commit.append(on_commit)

        query = urlencode({"prompt": "Say hi", "model1": GPT, "model2": HAIKU})
        scope = {
            "type": "http",
            "asgi": {"version": "3.0"},
            "http_version": "1.1",
            "method": "GET",
            "scheme": "http",
            "path": "/api/compare/stream",
            "raw_path": b"/api/compare/stream",
            "root_path": "",
            "query_string": query.encode(),
            "headers": [(b"host", b"test")],
            "client": ("127.0.0.1", 50000),
            "server": ("test", 80),
        }
        body = bytearray()
        disconnect = asyncio.Event()
        requested = False

        async def receive():
            nonlocal requested
            if not requested:
                requested = True
                return {"type": "http.request", "body": b"", "more_body": False}
            await disconnect.wait()
            return {"type": "http.disconnect"}

        async def send(message):
            if message["type"] == "http.response.body":
                body.extend(message.get("body", b""))
                frames = parse_frames(body.decode())
                if {e["slot"] for e in frames if e["type"] == "token"} == {"A", "B"}:
                    disconnect.set()

        call = asyncio.create_task(create_app(ctx)(scope, receive, send))
        await asyncio.wait_for(committed.wait(), timeout=3)
        await asyncio.wait_for(call, timeout=3)

        page = await ctx.history.list()
        assert page.total == 1
        record = page.items[0]
        assert record.error1 == record.error2 == "client disconnected"
        assert record.final_text1 is None and record.final_text2 is None
        assert record.tokens1 > 0 and record.tokens2 > 0


class TestCatalogAndHealth:
    async def test_models(self, client):
        data = (await client.get("/api/models")).json()
        ids = {m["id"] for m in data["models"]}
        assert {GPT, HAIKU} <= ids
        assert data["defaults"] == {"model1": GPT, "model2": HAIKU}

    async def test_health(self, client):
        data = (await client.get("/health")).json()
        assert data["status"] == "healthy"
        assert data["activeComparisons"] == 0
        assert data["services"]["retention"] == {"enabled": False, "healthy": None}


class TestHistoryApi:
    async def test_list_and_search(self, client, ctx):
        await ctx.history.create(outcome("alpha"))
        await ctx.history.create(outcome("beta"))

        data = (await client.get("/api/history", params={"page_size": 1})).json()
        assert data["total"] == 2
        assert data["hasMore"] is True
        assert data["items"][0]["prompt"] == "beta"

        data = (await client.get("/api/history", params={"search": "alp"})).json()
        assert [item["prompt"] for item in data["items"]] == ["alpha"]

    async def test_invalid_page_size(self, client):
        assert (await client.get("/api/history", params={"page_size": 500})).status_code == 422

    async def test_get_and_delete(self, client, ctx):
        record_id = await ctx.history.create(outcome())
        assert (await client.get(f"/api/history/{record_id}")).json()["id"] == record_id

        assert (await client.delete(f"/api/history/{record_id}")).json() == {"deleted": True}
        assert (await client.delete(f"/api/history/{record_id}")).json() == {"deleted": False}
        assert (await client.get(f"/api/history/{record_id}")).status_code == 404

    async def test_delete_many(self, client, ctx):
        ids = [await ctx.history.create(outcome(f"p{i}")) for i in range(3)]
        response = await client.post("/api/history/delete", json={"ids": ids[:2] + ["missing"]})
        assert response.json() == {"deleted": 2}

    async def test_stats(self, client, ctx):
        await ctx.history.create(outcome(cost1=0.001, cost2=0.001))
        data = (await client.get("/api/history/stats")).json()
        assert data["totalComparisons"] == 1
        assert data["totalCost"] == pytest.approx(0.002)

    async def test_export(self, client, ctx):
        await ctx.history.create(outcome("exported"))
        response = await client.get("/api/history/export", params={"format": "csv"})
        assert response.headers["content-type"].startswith("text/csv")
        assert "exported" in response.text
        assert (await client.get("/api/history/export", params={"format": "xml"})).status_code == 422

    async def test_cleanup(self, client, ctx):
        for i in range(3):
            await ctx.history.create(outcome(f"p{i}"))
        response = await client.post("/api/history/cleanup", json={"keepCount": 1})
        assert response.json() == {"deleted": 2}
