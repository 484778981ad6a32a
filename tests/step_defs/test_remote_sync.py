"""
Step definitions for pushing and pulling containers through a remote.
"""
import httpx
from pytest_bdd import given, parsers, scenarios, then, when

from conftest import make_receipt
from qmem.errors import IntegrityViolation, RemoteSyncError
from qmem.kernel.container import Container
from qmem.kernel.persistence import PersistenceEngine
from qmem.sync import HttpRemoteSync, InMemoryRemote, SyncBridge

scenarios("../features/remote_sync.feature")


def _mock_server(store: dict):
    """An httpx transport that keeps PUT bodies and serves them back on GET."""

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "PUT":
            store[request.url.path] = request.content
            return httpx.Response(204)
        if request.method == "GET" and request.url.path in store:
            return httpx.Response(200, content=store[request.url.path])
        return httpx.Response(404)

    return httpx.MockTransport(handler)


# =============================================================================
# Given Steps
# =============================================================================


@given(parsers.parse('a container for trace "{trace}" bridged to an in-memory remote'))
def bridged_container(test_context, trace: str):
    container = Container.create(owning_agent_id="agent-a", trace_id=trace)
    remote = InMemoryRemote()
    bridge = SyncBridge(container, remote, engine=PersistenceEngine(fsync=False))
    acks = []
    bridge.set_push_callback(acks.append)
    test_context.update(container=container, remote=remote, bridge=bridge, acks=acks)


@given("an HTTP remote backed by a mock server")
def http_remote(test_context):
    store: dict = {}
    client = httpx.Client(transport=_mock_server(store), base_url="https://memory.test/v1")
    test_context["http_store"] = store
    test_context["http_remote"] = HttpRemoteSync("https://memory.test/v1", client=client)


# =============================================================================
# When Steps
# =============================================================================


@when(parsers.parse("I append {count:d} receipts through the bridge container"))
def append_through_bridge(test_context, count: int):
    container = test_context["container"]
    for n in range(count):
        container.add_receipt(make_receipt(container, f"fetch:page:{n}"))


@when("I flush the bridge")
def flush_bridge(test_context):
    test_context["flush_ack"] = test_context["bridge"].flush()


@when("I pull the container back")
def pull_back(test_context):
    test_context["pulled"] = test_context["bridge"].pull()


@when("I try to pull the container back")
def try_pull_back(test_context):
    try:
        test_context["pulled"] = test_context["bridge"].pull()
    except (IntegrityViolation, RemoteSyncError) as e:
        test_context["error"] = e


@when(parsers.parse('I try to pull container "{container_id}"'))
def try_pull_id(test_context, container_id: str):
    try:
        test_context["pulled"] = test_context["bridge"].pull(container_id)
    except (IntegrityViolation, RemoteSyncError) as e:
        test_context["error"] = e


@when("the remote copy is tampered with")
def tamper_remote(test_context):
    remote = test_context["remote"]
    container_id = test_context["container"].container_id
    data = bytearray(remote.pull(container_id))
    # Last byte of the final receipt body, just ahead of the end marker
    data[-6] ^= 0x01
    remote.push(bytes(data))


@when("I push the container over HTTP")
def push_http(test_context):
    container = test_context["container"]
    container.add_receipt(make_receipt(container, "fetch:page:http"))
    data = PersistenceEngine().to_bytes(container)
    test_context["pushed_bytes"] = data
    test_context["http_ack"] = test_context["http_remote"].push(data)


@when("I pull the container over HTTP")
def pull_http(test_context):
    container_id = test_context["container"].container_id
    test_context["http_pulled"] = test_context["http_remote"].pull(container_id)


# =============================================================================
# Then Steps
# =============================================================================


@then(parsers.parse("the bridge has {count:d} pending receipts"))
def pending_count(test_context, count: int):
    assert len(test_context["bridge"].pending_receipts) == count


@then("the remote holds the container")
def remote_holds(test_context):
    container = test_context["container"]
    assert test_context["remote"].container_ids() == [container.container_id]
    ack = test_context["flush_ack"]
    assert ack.content_hash == container.header.content_hash
    assert test_context["acks"] == [ack]


@then("no push happened")
def no_push(test_context):
    assert test_context["flush_ack"] is None
    assert test_context["remote"].container_ids() == []
    assert test_context["acks"] == []


@then(parsers.parse("the pulled container has {count:d} receipts"))
def pulled_receipts(test_context, count: int):
    pulled = test_context["pulled"]
    assert len(pulled.receipts) == count
    assert pulled.header == test_context["container"].header


@then("the HTTP pull returns the pushed bytes")
def http_roundtrip(test_context):
    container = test_context["container"]
    assert test_context["http_pulled"] == test_context["pushed_bytes"]
    assert test_context["http_ack"].container_id == container.container_id
    assert f"/v1/containers/{container.container_id}" in test_context["http_store"]
    restored = PersistenceEngine().from_bytes(test_context["http_pulled"])
    assert restored.receipts == container.receipts
