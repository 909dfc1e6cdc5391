import asyncio
import threading

import pytest

from hue_lan_client.request_queue import RequestIdCounter, RequestQueue


@pytest.mark.asyncio
async def test_same_category_runs_in_order_one_at_a_time(transport) -> None:
    for n in range(5):
        transport.route("GET", f"/item/{n}", {"n": n}, delay=0.01)
    queue = RequestQueue("10.0.0.2", transport)

    futures = [queue.get(f"/item/{n}", "items") for n in range(5)]
    responses = await asyncio.gather(*futures)

    assert transport.paths() == [f"/item/{n}" for n in range(5)]
    assert transport.max_active == 1
    assert [response.status for response in responses] == [200] * 5
    assert responses[3].content == '{"n": 3}'


@pytest.mark.asyncio
async def test_hanging_category_does_not_block_another(transport) -> None:
    transport.route("GET", "/slow", {}, hang=True)
    transport.route("GET", "/fast", {"ok": True})
    queue = RequestQueue("10.0.0.2", transport, timeout=5.0)

    slow = queue.get("/slow", "a")
    fast = queue.get("/fast", "b")
    response = await asyncio.wait_for(fast, timeout=1.0)

    assert response is not None and response.status == 200
    assert not slow.done()
    queue.close()
    assert await slow is None


@pytest.mark.asyncio
async def test_timeout_resolves_none_and_releases_slot(transport) -> None:
    transport.route("GET", "/slow", {}, hang=True)
    transport.route("GET", "/next", {"ok": True})
    queue = RequestQueue("10.0.0.2", transport, timeout=0.05)

    first = queue.get("/slow", "info")
    second = queue.get("/next", "info")

    assert await first is None
    response = await second
    assert response is not None and response.status == 200
    assert queue.pending() == 0


@pytest.mark.asyncio
async def test_transport_errors_resolve_none(transport) -> None:
    transport.route("PUT", "/broken", error=ConnectionResetError("reset"))
    queue = RequestQueue("10.0.0.2", transport)
    assert await queue.put("/broken", "{}") is None


@pytest.mark.asyncio
async def test_category_defaults_to_path(transport) -> None:
    transport.route("GET", "/a", {}, hang=True)
    queue = RequestQueue("10.0.0.2", transport)
    queue.get("/a")
    queue.get("/a")
    await asyncio.sleep(0)
    assert queue.categories() == ["/a"]
    assert queue.pending("/a") == 2
    queue.close()


@pytest.mark.asyncio
async def test_closed_queue_resolves_immediately(transport) -> None:
    queue = RequestQueue("10.0.0.2", transport)
    queue.close()
    future = queue.get("/api", "info")
    assert future.done()
    assert await future is None
    assert transport.calls == []


@pytest.mark.asyncio
async def test_body_and_content_type_are_sent(transport) -> None:
    transport.route("POST", "/api", [{"success": {"username": "abc"}}])
    queue = RequestQueue("10.0.0.2", transport, content_type="application/json")
    await queue.post("/api", '{"devicetype": "x"}', "registration")
    call = transport.calls[0]
    assert call.host == "10.0.0.2"
    assert call.body == '{"devicetype": "x"}'
    assert call.content_type == "application/json"


@pytest.mark.asyncio
async def test_host_change_applies_to_later_requests(transport) -> None:
    transport.route("GET", "/description.xml", "<root/>")
    queue = RequestQueue("10.0.0.2", transport)
    await queue.get("/description.xml")
    queue.host = "10.0.0.3"
    await queue.get("/description.xml")
    assert [call.host for call in transport.calls] == ["10.0.0.2", "10.0.0.3"]


def test_request_ids_are_unique_across_threads() -> None:
    counter = RequestIdCounter()
    seen = []
    lock = threading.Lock()

    def worker() -> None:
        ids = [counter.next() for _ in range(500)]
        with lock:
            seen.extend(ids)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(seen) == list(range(1, 2001))
