import pytest
from fastapi.testclient import TestClient

from conftest import make_deck
from cardclash.main import app
from cardclash.routers import ws_routes
from cardclash.schemas.game import GameStatus


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr(ws_routes.scheduler, "time_scale", 0.05)
    with TestClient(app) as test_client:
        yield test_client


def send(ws, event_type, **payload):
    ws.send_json({"type": event_type, "payload": payload})


def receive_until(ws, event_type, limit=50):
    for _ in range(limit):
        message = ws.receive_json()
        if message["type"] == event_type:
            return message
    raise AssertionError(f"no {event_type} within {limit} messages")


def connect(ws):
    message = ws.receive_json()
    assert message["type"] == "connected"
    return message["payload"]["id"]


def test_root_and_health(client):
    assert client.get("/").json()["name"] == "Card Clash"
    assert client.get("/health").json()["status"] == "healthy"


def test_unknown_lobby_returns_404(client):
    assert client.get("/lobby/ZZZZ").status_code == 404
    assert client.delete("/lobby/ZZZZ").status_code == 404


def test_create_and_join_lobby(client):
    with client.websocket_connect("/ws") as host:
        host_id = connect(host)
        send(host, "createLobby", nickname="Ana")
        lobby = receive_until(host, "lobbyUpdated")["payload"]["lobby"]
        code = lobby["code"]
        assert lobby["leader"] == host_id
        assert len(code) == 4

        with client.websocket_connect("/ws") as guest:
            guest_id = connect(guest)
            send(guest, "joinLobby", code=code.lower(), nickname="Ben")
            joined = receive_until(guest, "lobbyUpdated")["payload"]["lobby"]
            assert {p["id"] for p in joined["players"]} == {host_id, guest_id}
            receive_until(host, "lobbyUpdated")

            listed = client.get("/lobby/").json()
            assert any(info["code"] == code and info["player_count"] == 2 for info in listed)
            assert client.get(f"/lobby/{code}").json()["code"] == code

            send(guest, "getLobby", code=code)
            assert receive_until(guest, "lobbyData")["payload"]["lobby"]["code"] == code

            send(guest, "sendChat", text="  hi all ")
            chat = receive_until(host, "chatMessage")["payload"]
            assert chat == {"player": "Ben", "id": guest_id, "text": "hi all"}

        remaining = receive_until(host, "lobbyUpdated")["payload"]["lobby"]
        assert [p["name"] for p in remaining["players"]] == ["Ana"]


def test_leader_leaving_hands_over_leadership(client):
    with client.websocket_connect("/ws") as guest:
        guest_id = connect(guest)
        with client.websocket_connect("/ws") as host:
            connect(host)
            send(host, "createLobby", nickname="Ana")
            code = receive_until(host, "lobbyUpdated")["payload"]["lobby"]["code"]
            send(guest, "joinLobby", code=code, nickname="Ben")
            receive_until(guest, "lobbyUpdated")

        lobby = receive_until(guest, "lobbyUpdated")["payload"]["lobby"]
        assert lobby["leader"] == guest_id


def test_bad_messages_get_error_events(client):
    with client.websocket_connect("/ws") as ws:
        connect(ws)

        ws.send_text("not json")
        assert ws.receive_json()["payload"]["error"] == "Invalid JSON"

        send(ws, "teleport")
        assert "Unknown event type" in ws.receive_json()["payload"]["error"]

        send(ws, "joinLobby", nickname="Ben")
        assert ws.receive_json()["type"] == "error"

        send(ws, "createLobby", nickname="   ")
        assert "Invalid name" in ws.receive_json()["payload"]["error"]

        send(ws, "ping")
        assert ws.receive_json()["type"] == "pong"


def test_get_missing_lobby_returns_null(client):
    with client.websocket_connect("/ws") as ws:
        connect(ws)
        send(ws, "getLobby", code="QQQQ")
        message = ws.receive_json()
        assert message["type"] == "lobbyData"
        assert message["payload"]["lobby"] is None


def test_single_player_game(client):
    with client.websocket_connect("/ws") as ws:
        connect(ws)
        send(ws, "createLobby", nickname="Ana")
        receive_until(ws, "lobbyUpdated")

        send(ws, "updateFlashcard", set_name="Capitals",
             flashcards=[{"question": "France", "answer": "Paris"}])
        lobby = receive_until(ws, "lobbyUpdated")["payload"]["lobby"]
        assert lobby["flashcard_name"] == "Capitals"

        send(ws, "updateSettings", settings={"round_time": 20})
        assert receive_until(ws, "lobbyUpdated")["payload"]["lobby"]["settings"]["round_time"] == 20

        send(ws, "startGame")
        assert receive_until(ws, "startCountdown")["payload"]["seconds"] == 3
        question = receive_until(ws, "newFlashcard")["payload"]
        assert question == {"question": "France", "choices": None}

        send(ws, "answer", text="paris")
        guess = receive_until(ws, "correctGuess")["payload"]
        assert guess["elapsed_ms"] >= 0

        results = receive_until(ws, "endFlashcard")["payload"]["results"]
        assert results["answer"] == "Paris"
        assert results["fastest_players"][0]["player"] == "Ana"

        for _ in range(10):
            lobby = receive_until(ws, "lobbyUpdated")["payload"]["lobby"]
            if lobby["status"] == "finished":
                break
        assert lobby["status"] == "finished"
        assert lobby["players"][0]["wins"] == 1


@pytest.mark.asyncio
async def test_leaving_player_can_complete_end_game_vote():
    directory = ws_routes.directory
    lobby = directory.create_lobby("vote-a", "Ana")
    ws_routes.roster.add_player(lobby.code, "vote-b", "Ben")
    lobby.flashcards = make_deck(3)
    try:
        ws_routes.engine.start_game("vote-a")
        ws_routes.engine.begin_play(lobby.code)
        ws_routes.engine.vote_end_game("vote-a")
        assert not ws_routes.engine.vote_quorum_reached(lobby)

        await ws_routes.leave_current_lobby("vote-b")

        assert lobby.status == GameStatus.FINISHED
        assert lobby.end_game_votes == []
        assert directory.get_game_state(lobby.code) is None
    finally:
        directory.destroy_lobby(lobby.code)
