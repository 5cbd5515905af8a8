"""Socket relay behaviour against a recording fake server and the memory gateway."""

import asyncio

import pytest
from socketio.exceptions import ConnectionRefusedError

from src.aikanban.infrastructure.task_gateway import InMemoryTaskGateway, TaskGatewayError
from src.aikanban.services.task_relay import TaskRelay


def _environ(query: str) -> dict:
    return {"QUERY_STRING": query}


@pytest.fixture
def gateway():
    return InMemoryTaskGateway()


@pytest.fixture
def relay(fake_sio, gateway):
    r = TaskRelay(fake_sio, gateway_provider=lambda: gateway)
    r.register()
    return r


def _titles(tasks):
    return [t["title"] for t in tasks]


def test_register_binds_every_client_event(relay, fake_sio):
    assert set(fake_sio.handlers) == {
        "connect",
        "disconnect",
        "addTask",
        "taskMoved",
        "renameTask",
        "deleteTask",
        "rejoin",
        "switchBoard",
        "aiPrompt",
    }


@pytest.mark.asyncio
async def test_connect_pushes_personal_and_org_lists(relay, fake_sio, gateway):
    await gateway.insert_task({"title": "mine", "status": "todo", "user_id": "u1"})
    await gateway.insert_task({"title": "team", "status": "todo", "user_id": "u2", "organisation_id": "o1", "is_main_board": True})

    await relay.on_connect("sid1", _environ("userId=u1&orgId=o1"))

    assert fake_sio.sessions["sid1"] == {"user_id": "u1", "org_id": "o1", "board": "personal"}
    assert "sid1" in fake_sio.rooms["user:u1"]
    assert "sid1" in fake_sio.rooms["org:o1"]
    assert _titles(fake_sio.last("sid1", "loadTasks")) == ["mine"]
    assert _titles(fake_sio.last("sid1", "loadOrgTasks")) == ["team"]


@pytest.mark.asyncio
async def test_connect_without_org_gets_no_org_list(relay, fake_sio):
    await relay.on_connect("sid1", _environ("userId=u1&orgId=undefined"))
    assert fake_sio.last("sid1", "loadTasks") == []
    assert fake_sio.last("sid1", "loadOrgTasks") is None
    assert "org:undefined" not in fake_sio.rooms


@pytest.mark.asyncio
async def test_connect_accepts_ids_from_auth_payload(relay, fake_sio):
    await relay.on_connect("sid1", _environ(""), {"userId": "u9"})
    assert "sid1" in fake_sio.rooms["user:u9"]


@pytest.mark.asyncio
async def test_connect_without_user_is_refused(relay, fake_sio):
    with pytest.raises(ConnectionRefusedError):
        await relay.on_connect("sid1", _environ("orgId=o1"))
    assert fake_sio.emitted == []
    assert "sid1" not in fake_sio.sessions


@pytest.mark.asyncio
async def test_add_task_broadcasts_full_list_to_personal_room(relay, fake_sio):
    await relay.on_connect("a", _environ("userId=u1"))
    await relay.on_connect("b", _environ("userId=u1"))
    await relay.on_connect("other", _environ("userId=u2"))
    fake_sio.clear()

    ack = await relay.on_add_task("a", {"title": "  Write tests  "})

    assert ack["ok"] is True
    assert ack["task"]["title"] == "Write tests"
    assert ack["task"]["status"] == "todo"
    for sid in ("a", "b"):
        assert _titles(fake_sio.last(sid, "updateTasks")) == ["Write tests"]
    assert fake_sio.received_by("other") == []


@pytest.mark.asyncio
async def test_add_task_on_org_board_lands_on_main_board(relay, fake_sio, gateway):
    await relay.on_connect("a", _environ("userId=u1&orgId=o1&board=org"))
    await relay.on_connect("b", _environ("userId=u2&orgId=o1"))
    fake_sio.clear()

    ack = await relay.on_add_task("a", {"title": "Team task"})

    assert ack["task"]["organisation_id"] == "o1"
    assert ack["task"]["is_main_board"] is True
    assert _titles(fake_sio.last("b", "updateOrgTasks")) == ["Team task"]
    assert await gateway.list_personal("u1") == []


@pytest.mark.asyncio
async def test_task_moved_updates_status_for_every_subscriber(relay, fake_sio, gateway):
    row = await gateway.insert_task({"title": "t", "status": "todo", "user_id": "u1"})
    await relay.on_connect("a", _environ("userId=u1"))
    await relay.on_connect("b", _environ("userId=u1"))
    fake_sio.clear()

    ack = await relay.on_task_moved("a", {"taskId": row["id"], "newStatus": "progress"})

    assert ack["ok"] is True
    assert fake_sio.last("b", "updateTasks")[0]["status"] == "progress"
    assert (await gateway.get_task(row["id"]))["status"] == "progress"


@pytest.mark.asyncio
async def test_move_reaches_the_assignee(relay, fake_sio, gateway):
    row = await gateway.insert_task({"title": "t", "status": "todo", "user_id": "u1", "assigned_to": "u2"})
    await relay.on_connect("owner", _environ("userId=u1"))
    await relay.on_connect("assignee", _environ("userId=u2"))
    fake_sio.clear()

    await relay.on_task_moved("owner", {"taskId": row["id"], "newStatus": "done"})

    assert fake_sio.last("assignee", "updateTasks")[0]["status"] == "done"


@pytest.mark.asyncio
async def test_rename_and_delete(relay, fake_sio, gateway):
    row = await gateway.insert_task({"title": "old", "status": "todo", "user_id": "u1"})
    await relay.on_connect("a", _environ("userId=u1"))

    ack = await relay.on_rename_task("a", {"taskId": row["id"], "newTitle": "new"})
    assert ack["ok"] is True
    assert _titles(fake_sio.last("a", "updateTasks")) == ["new"]

    ack = await relay.on_delete_task("a", {"taskId": row["id"]})
    assert ack == {"ok": True, "task": None}
    assert fake_sio.last("a", "updateTasks") == []


@pytest.mark.asyncio
async def test_racing_moves_converge_on_last_write(relay, fake_sio, gateway):
    row = await gateway.insert_task({"title": "t", "status": "todo", "user_id": "u1"})
    await relay.on_connect("a", _environ("userId=u1"))
    await relay.on_connect("b", _environ("userId=u1"))
    fake_sio.clear()

    await asyncio.gather(
        relay.on_task_moved("a", {"taskId": row["id"], "newStatus": "progress"}),
        relay.on_task_moved("b", {"taskId": row["id"], "newStatus": "done"}),
    )

    final = (await gateway.get_task(row["id"]))["status"]
    assert fake_sio.last("a", "updateTasks")[0]["status"] == final
    assert fake_sio.last("b", "updateTasks")[0]["status"] == final


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "event,payload",
    [
        ("on_add_task", {"title": "   "}),
        ("on_add_task", None),
        ("on_task_moved", {"taskId": 1, "newStatus": "archived"}),
        ("on_task_moved", {"newStatus": "done"}),
        ("on_rename_task", {"taskId": 1, "newTitle": ""}),
        ("on_delete_task", {}),
    ],
)
async def test_invalid_payloads_are_rejected_without_broadcast(relay, fake_sio, event, payload):
    await relay.on_connect("a", _environ("userId=u1"))
    fake_sio.clear()

    ack = await getattr(relay, event)("a", payload)

    assert ack["ok"] is False
    assert ack["error"]
    assert fake_sio.emitted == []


@pytest.mark.asyncio
async def test_unknown_task_is_reported(relay, fake_sio):
    await relay.on_connect("a", _environ("userId=u1"))
    fake_sio.clear()
    ack = await relay.on_task_moved("a", {"taskId": 404, "newStatus": "done"})
    assert ack == {"ok": False, "error": "Task not found"}
    assert fake_sio.emitted == []


@pytest.mark.asyncio
async def test_gateway_failure_is_acked_and_not_broadcast(relay, fake_sio, gateway, monkeypatch):
    await relay.on_connect("a", _environ("userId=u1"))
    fake_sio.clear()

    async def broken_insert(_row):
        raise TaskGatewayError("insert_task failed: permission denied")

    monkeypatch.setattr(gateway, "insert_task", broken_insert)
    ack = await relay.on_add_task("a", {"title": "x"})

    assert ack == {"ok": False, "error": "insert_task failed: permission denied"}
    assert fake_sio.emitted == []


@pytest.mark.asyncio
async def test_rejoin_replays_the_same_list(relay, fake_sio, gateway):
    await gateway.insert_task({"title": "a", "status": "todo", "user_id": "u1"})
    await gateway.insert_task({"title": "b", "status": "done", "user_id": "u1"})
    await relay.on_connect("s", _environ("userId=u1"))
    first = fake_sio.last("s", "loadTasks")
    fake_sio.clear()

    ack = await relay.on_rejoin("s", {"userId": "u1"})
    assert ack == {"ok": True}
    assert fake_sio.last("s", "loadTasks") == first

    await relay.on_rejoin("s", {"userId": "u1"})
    assert fake_sio.rooms["user:u1"] == {"s"}


@pytest.mark.asyncio
async def test_rejoin_moves_between_scopes(relay, fake_sio):
    await relay.on_connect("s", _environ("userId=u1&orgId=o1"))
    await relay.on_rejoin("s", {"userId": "u2", "orgId": ""})
    assert "s" not in fake_sio.rooms["user:u1"]
    assert "s" not in fake_sio.rooms["org:o1"]
    assert "s" in fake_sio.rooms["user:u2"]
    assert fake_sio.sessions["s"]["org_id"] is None


@pytest.mark.asyncio
async def test_switch_board_pushes_selected_board(relay, fake_sio, gateway):
    await gateway.insert_task({"title": "team", "status": "todo", "user_id": "u2", "organisation_id": "o1", "is_main_board": True})
    await relay.on_connect("s", _environ("userId=u1&orgId=o1"))
    fake_sio.clear()

    ack = await relay.on_switch_board("s", {"board": "org"})

    assert ack == {"ok": True, "board": "org"}
    assert _titles(fake_sio.last("s", "boardSwitched")) == ["team"]
    assert fake_sio.sessions["s"]["board"] == "org"


@pytest.mark.asyncio
async def test_switch_to_org_without_org_fails(relay, fake_sio):
    await relay.on_connect("s", _environ("userId=u1"))
    ack = await relay.on_switch_board("s", {"board": "org"})
    assert ack["ok"] is False
    assert (await relay.on_switch_board("s", {"board": "kanban"}))["ok"] is False


@pytest.mark.asyncio
async def test_ai_prompt_without_agent_is_rejected(relay, fake_sio):
    await relay.on_connect("s", _environ("userId=u1"))
    ack = await relay.on_ai_prompt("s", {"taskId": 1, "prompt": "help"})
    assert ack == {"ok": False, "error": "AI assistant unavailable"}


@pytest.mark.asyncio
async def test_mutation_publishes_event(relay, fake_sio, monkeypatch):
    from src.aikanban.services import task_relay

    published = []

    async def fake_publish(action, payload):
        published.append((action, payload))
        return True

    monkeypatch.setattr(task_relay, "publish_task_event", fake_publish)
    await relay.on_connect("s", _environ("userId=u1"))
    await relay.on_add_task("s", {"title": "x"})
    assert published == [("addTask", {"task_id": 1, "user_id": "u1", "org_id": None})]


@pytest.mark.asyncio
@pytest.mark.parametrize("history", [{}, "not a list", 7, [{"role": "user", "content": "ok"}, "junk"]])
async def test_loose_ai_history_does_not_break_the_board(relay, fake_sio, gateway, history):
    await gateway.insert_task({"title": "odd", "status": "todo", "user_id": "u1", "ai_history": history})
    await gateway.insert_task({"title": "plain", "status": "todo", "user_id": "u1", "priority": 2})

    await relay.on_connect("sid1", _environ("userId=u1"))

    loaded = fake_sio.last("sid1", "loadTasks")
    assert _titles(loaded) == ["plain", "odd"]
    assert loaded[0]["priority"] == "2"
    odd = loaded[1]
    assert odd["ai_history"] is None or all(isinstance(t, dict) for t in odd["ai_history"])

    fake_sio.clear()
    ack = await relay.on_add_task("sid1", {"title": "new"})
    assert ack["ok"] is True
    assert _titles(fake_sio.last("sid1", "updateTasks")) == ["new", "plain", "odd"]
