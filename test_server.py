"""
Tests for the room server: room lifecycle, action routing, the
one-time game_over result, restart, and the socket message loop.
"""

import asyncio
import json
import random
from functools import partial

import pytest

from flagfall.server import GameServer, generate_room_code
from flagfall.siege.ai import bot_move
from flagfall.siege.engine import SiegeEngine
from flagfall.siege.state import make_card, make_flag, OUTPOST


# ── Helpers ───────────────────────────────────────────────────────────

def make_server():
    server = GameServer()
    server.register_engine("siege", partial(SiegeEngine, rng=random.Random(4)), bot_policy=bot_move)
    return server


def started_room(server):
    code, host_id, _ = server.create_room("siege", "Alice")
    guest_id, _ = server.join_room(code, "Bob")
    server.start_game(code, host_id)
    return server.rooms[code], host_id, guest_id


def place(color, rank, target):
    return {"kind": "place", "card": {"color": color, "rank": rank}, "target": target}


def shrink_to_micro_board(room, host_id, guest_id):
    """Two outposts; the host holds two pairs, the guest two high cards."""
    state = room.game_state
    ids = [host_id, guest_id]
    state["board"] = [make_flag(OUTPOST, 2, ids), make_flag(OUTPOST, 2, ids)]
    state["deck"] = []
    state["hands"][host_id] = [make_card("red", 5), make_card("blue", 5),
                               make_card("red", 8), make_card("blue", 8)]
    state["hands"][guest_id] = [make_card("green", 1), make_card("yellow", 9),
                                make_card("green", 2), make_card("yellow", 7)]


# ══════════════════════════════════════════════════════════════════════
# Room Lifecycle
# ══════════════════════════════════════════════════════════════════════

class TestRooms:

    def test_room_code_alphabet(self):
        code = generate_room_code()
        assert len(code) == 5
        assert not set(code) & set("IO01")

    def test_create_and_join(self):
        server = make_server()
        code, host_id, token = server.create_room("siege", "Alice")
        guest_id, guest_token = server.join_room(code, "Bob")
        room = server.rooms[code]
        assert room.host_id == host_id
        assert list(room.players) == [host_id, guest_id]
        assert server.tokens[guest_token] == (code, guest_id)

    def test_unknown_game(self):
        with pytest.raises(ValueError, match="Unknown game"):
            make_server().create_room("chess", "Alice")

    def test_room_is_full(self):
        server = make_server()
        code, _, _ = server.create_room("siege", "Alice")
        server.join_room(code, "Bob")
        with pytest.raises(ValueError, match="Room is full"):
            server.join_room(code, "Carol")

    def test_start_needs_two_players(self):
        server = make_server()
        code, host_id, _ = server.create_room("siege", "Alice")
        with pytest.raises(ValueError, match="at least 2"):
            server.start_game(code, host_id)

    def test_only_host_starts(self):
        server = make_server()
        code, _, _ = server.create_room("siege", "Alice")
        guest_id, _ = server.join_room(code, "Bob")
        with pytest.raises(ValueError, match="Only the host"):
            server.start_game(code, guest_id)

    def test_start_deals_a_match(self):
        server = make_server()
        room, host_id, guest_id = started_room(server)
        assert room.started
        assert room.game_state["player_names"] == ["Alice", "Bob"]
        assert len(room.game_state["hands"][host_id]) == 5
        assert len(room.game_state["hands"][guest_id]) == 5

    def test_no_join_after_start(self):
        server = make_server()
        room, _, _ = started_room(server)
        with pytest.raises(ValueError, match="in progress"):
            server.join_room(room.code, "Carol")


# ══════════════════════════════════════════════════════════════════════
# Action Routing
# ══════════════════════════════════════════════════════════════════════

class TestSubmitAction:

    def test_action_before_start(self):
        server = make_server()
        code, host_id, _ = server.create_room("siege", "Alice")
        with pytest.raises(ValueError, match="not started"):
            server.submit_action(server.rooms[code], host_id, place("red", 1, 0))

    def test_accepted_action_replaces_state(self):
        server = make_server()
        room, host_id, _ = started_room(server)
        hand_card = room.game_state["hands"][host_id][0]
        before = room.game_state

        result, final = server.submit_action(
            room, host_id, place(hand_card["color"], hand_card["rank"], 0))
        assert result.accepted
        assert final is None
        assert room.game_state is result.new_state
        assert room.game_state is not before
        assert room.game_state["cards_placed"] == 1

    def test_rejected_action_keeps_state(self):
        server = make_server()
        room, host_id, guest_id = started_room(server)
        guest_card = room.game_state["hands"][guest_id][0]
        before = room.game_state

        result, final = server.submit_action(
            room, host_id, place(guest_card["color"], guest_card["rank"], 0))
        assert result.accepted is False
        assert final is None
        assert room.game_state is before

    def test_malformed_action_raises(self):
        server = make_server()
        room, host_id, _ = started_room(server)
        with pytest.raises(ValueError):
            server.submit_action(room, host_id, {"kind": "shuffle"})
        with pytest.raises(ValueError):
            server.submit_action(room, "p_nobody", place("red", 1, 0))

    def test_game_over_reported_once(self):
        server = make_server()
        room, host_id, guest_id = started_room(server)
        shrink_to_micro_board(room, host_id, guest_id)

        for color, rank, target in (("red", 5, 0), ("blue", 5, 0), ("red", 8, 1), ("blue", 8, 1)):
            _, final = server.submit_action(room, host_id, place(color, rank, target))
            assert final is None
        for color, rank, target in (("green", 1, 0), ("yellow", 9, 0), ("green", 2, 1)):
            _, final = server.submit_action(room, guest_id, place(color, rank, target))
            assert final is None

        result, final = server.submit_action(room, guest_id, place("yellow", 7, 1))
        assert result.game_over
        assert final == {"winner": host_id, "scores": {host_id: 2, guest_id: 0}}
        assert room.result_sent

        # Later actions are soft-rejected and never re-announce the result
        result, final = server.submit_action(room, guest_id, place("yellow", 7, 1))
        assert result.accepted is False
        assert final is None


class TestRestart:

    def test_only_host_restarts(self):
        server = make_server()
        room, _, guest_id = started_room(server)
        with pytest.raises(ValueError, match="Only the host"):
            server.restart_game(room.code, guest_id)

    def test_restart_before_start(self):
        server = make_server()
        code, host_id, _ = server.create_room("siege", "Alice")
        server.join_room(code, "Bob")
        with pytest.raises(ValueError, match="not started"):
            server.restart_game(code, host_id)

    def test_restart_deals_fresh_match(self):
        server = make_server()
        room, host_id, guest_id = started_room(server)
        shrink_to_micro_board(room, host_id, guest_id)
        room.result_sent = True

        state = server.restart_game(room.code, host_id)
        assert state is room.game_state
        assert room.result_sent is False
        assert state["cards_placed"] == 0
        assert len(state["board"]) == 9
        assert len(state["deck"]) == 60


# ══════════════════════════════════════════════════════════════════════
# Bot Seats
# ══════════════════════════════════════════════════════════════════════

class TestBots:

    def _bot_room(self, server, difficulty=1):
        code, host_id, _ = server.create_room("siege", "Alice")
        bot_id = server.add_bot(code, host_id, difficulty)
        server.start_game(code, host_id)
        room = server.rooms[code]
        room.bot_rng = random.Random(0)
        return room, host_id, bot_id

    def test_add_bot_seats_a_tokenless_player(self):
        server = make_server()
        code, host_id, _ = server.create_room("siege", "Alice")
        bot_id = server.add_bot(code, host_id, difficulty=2)
        room = server.rooms[code]
        assert room.players[bot_id].bot == 2
        assert room.players[bot_id].name == "Bot 1"
        assert bot_id not in [pid for _, pid in server.tokens.values()]
        assert room.player_list[1] == {
            "player_id": bot_id, "name": "Bot 1", "connected": False, "bot": True,
        }

    def test_add_bot_errors(self):
        server = make_server()
        code, host_id, _ = server.create_room("siege", "Alice")
        guest_id, _ = server.join_room(code, "Bob")
        with pytest.raises(ValueError, match="Only the host"):
            server.add_bot(code, guest_id)
        with pytest.raises(ValueError, match="difficulty"):
            server.add_bot(code, host_id, difficulty="hard")
        with pytest.raises(ValueError, match="Room is full"):
            server.add_bot(code, host_id)

    def test_no_bot_without_policy(self):
        server = GameServer()
        server.register_engine("siege", SiegeEngine)
        code, host_id, _ = server.create_room("siege", "Alice")
        with pytest.raises(ValueError, match="No bot"):
            server.add_bot(code, host_id)

    def test_no_bot_after_start(self):
        server = make_server()
        room, host_id, _ = self._bot_room(server)
        with pytest.raises(ValueError, match="in progress"):
            server.add_bot(room.code, host_id)

    def test_bot_answers_once_while_human_can_act(self):
        server = make_server()
        room, host_id, bot_id = self._bot_room(server)
        first = room.game_state["hands"][host_id][0]
        server.submit_action(room, host_id, place(first["color"], first["rank"], 0))

        played = server.play_bots(room)
        assert len(played) == 1
        assert played[0][0].accepted
        assert room.game_state["cards_placed"] == 2
        assert host_id in room.engine.get_waiting_for(room.game_state)

    def test_bot_keeps_moving_while_human_is_locked_out(self):
        server = make_server()
        room, host_id, bot_id = self._bot_room(server, difficulty=2)
        state = room.game_state
        state["board"][0]["cards"][host_id] = [make_card("red", 1, host_id), make_card("red", 2, host_id)]
        state["cannons"][bot_id] = [make_card("pink", 1, bot_id), make_card("pink", 2, bot_id)]
        state["fired_cannons"][host_id] = True
        state["attack_privilege"] = bot_id
        state["freeze"] = {"kind": "cannon-freeze"}

        # Destroying a host card re-arms the loaded cannon, so the bot attacks twice
        played = server.play_bots(room)
        assert len(played) == 2
        assert all(result.accepted for result, _ in played)
        assert room.game_state["attack_privilege"] is None
        assert room.game_state["fired_cannons"][bot_id] is True

    def test_no_bot_moves_after_game_over(self):
        server = make_server()
        room, host_id, _ = self._bot_room(server)
        room.game_state["game_over"] = True
        room.game_state["winner"] = host_id
        assert server.play_bots(room) == []


# ══════════════════════════════════════════════════════════════════════
# Socket Loop
# ══════════════════════════════════════════════════════════════════════

class FakeSocket:
    """Feeds canned frames to the server and records what it sends back."""

    def __init__(self, frames):
        self.frames = [f if isinstance(f, str) else json.dumps(f) for f in frames]
        self.sent = []

    def __aiter__(self):
        return self._frames()

    async def _frames(self):
        for frame in self.frames:
            yield frame

    async def send(self, data):
        self.sent.append(json.loads(data))


class TestSocketLoop:

    def test_auth_start_and_errors(self):
        server = make_server()
        code, host_id, token = server.create_room("siege", "Alice")
        server.join_room(code, "Bob")
        socket = FakeSocket([
            "{not json",
            {"type": "chat", "message": "hi"},
            {"type": "auth", "token": token},
            {"type": "start"},
            {"type": "dance"},
        ])

        asyncio.run(server.handle_connection(socket))

        assert [m["type"] for m in socket.sent] == [
            "error", "error", "authenticated", "lobby_update",
            "game_started", "game_state", "error",
        ]
        assert socket.sent[1]["message"].startswith("Not authenticated")
        state_msg = socket.sent[5]
        assert state_msg["your_turn"] is True
        assert isinstance(state_msg["state"]["hands"][host_id], list)
        assert socket.sent[6]["message"] == "Unknown message type: dance"
        # Socket closed: seat is marked disconnected
        assert server.rooms[code].players[host_id].connected is False

    def test_rejected_action_goes_to_sender_only(self):
        server = make_server()
        code, host_id, token = server.create_room("siege", "Alice")
        server.join_room(code, "Bob")
        server.start_game(code, host_id)
        socket = FakeSocket([
            {"type": "auth", "token": token},
            {"type": "action", "action": place("red", 11, 0)},
            {"type": "action", "action": {"kind": "destroy", "card": {"color": "red", "rank": 1, "owner": host_id}}},
        ])

        asyncio.run(server.handle_connection(socket))

        types = [m["type"] for m in socket.sent]
        assert types[-2:] == ["action_error", "action_rejected"]

    def test_non_object_action_is_an_error(self):
        server = make_server()
        code, host_id, token = server.create_room("siege", "Alice")
        server.join_room(code, "Bob")
        server.start_game(code, host_id)
        socket = FakeSocket([
            {"type": "auth", "token": token},
            {"type": "action", "action": [1]},
            {"type": "action"},
        ])

        asyncio.run(server.handle_connection(socket))

        assert [m["type"] for m in socket.sent][-2:] == ["action_error", "action_error"]
        assert socket.sent[-1]["message"] == "Action must be an object"

    def test_add_bot_message(self):
        server = make_server()
        code, host_id, token = server.create_room("siege", "Alice")
        socket = FakeSocket([
            {"type": "auth", "token": token},
            {"type": "add_bot", "difficulty": 0},
        ])

        asyncio.run(server.handle_connection(socket))

        update = socket.sent[-1]
        assert update["type"] == "lobby_update"
        assert [p["bot"] for p in update["players"]] == [False, True]

    def test_bot_replies_after_human_action(self):
        server = make_server()
        code, host_id, token = server.create_room("siege", "Alice")
        server.add_bot(code, host_id)
        server.start_game(code, host_id)
        room = server.rooms[code]
        room.bot_rng = random.Random(2)
        first = room.game_state["hands"][host_id][0]
        socket = FakeSocket([
            {"type": "auth", "token": token},
            {"type": "action", "action": place(first["color"], first["rank"], 0)},
        ])

        asyncio.run(server.handle_connection(socket))

        types = [m["type"] for m in socket.sent]
        assert types.count("game_log") == 2
        assert types[-1] == "game_state"
        assert room.game_state["cards_placed"] == 2
