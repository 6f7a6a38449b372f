"""
WebSocket room server for Siege.

A room seats two players around one match. Every incoming message is
handled to completion on the event loop before the next one, so a
room's state only ever changes one action at a time. The server never
inspects the rules: it stores whatever ActionResult hands back and
decides what to broadcast from `accepted` and the engine's result.
"""

import argparse
import asyncio
import json
import random
import secrets
import time
from dataclasses import dataclass, field
from functools import partial

import websockets

from flagfall.game_engine import GameEngine

CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"  # no I/O/0/1
CODE_LENGTH = 5

# Most moves bots may chain while no human seat can act
BOT_MOVE_LIMIT = 50


def generate_room_code():
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))


def generate_token():
    return secrets.token_urlsafe(24)


def new_player_id():
    return f"p_{generate_token()[:8]}"


@dataclass
class Seat:
    player_id: str
    name: str
    token: str
    websocket: object = None
    bot: int = None          # difficulty, set only for server-driven seats

    @property
    def connected(self):
        return self.websocket is not None


@dataclass
class Room:
    code: str
    host_id: str
    engine: GameEngine
    game_name: str = "siege"
    players: dict = field(default_factory=dict)       # player_id -> Seat, in join order
    game_state: dict = None
    started: bool = False
    result_sent: bool = False                          # game_over already announced
    bot_policy: object = None                          # (state, player_id, difficulty, rng) -> action
    bot_rng: random.Random = field(default_factory=random.Random)
    created_at: float = field(default_factory=time.time)

    @property
    def player_list(self):
        return [
            {"player_id": s.player_id, "name": s.name,
             "connected": s.connected, "bot": s.bot is not None}
            for s in self.players.values()
        ]

    def is_full(self):
        return len(self.players) >= self.engine.player_count_range[1]


class GameServer:
    """Rooms, seats and tokens, plus the message loop for each socket."""

    def __init__(self):
        self.rooms: dict[str, Room] = {}
        self.tokens: dict[str, tuple[str, str]] = {}    # token -> (room_code, player_id)
        self.engines: dict[str, object] = {}            # game_name -> engine factory
        self.bot_policies: dict[str, object] = {}       # game_name -> bot policy

    def register_engine(self, game_name, engine_factory, bot_policy=None):
        """
        `engine_factory()` must return a fresh GameEngine for one room.
        `bot_policy(state, player_id, difficulty, rng)` returns the action a
        bot seat plays, or None; without one the game cannot seat bots.
        """
        self.engines[game_name] = engine_factory
        if bot_policy is not None:
            self.bot_policies[game_name] = bot_policy

    # ── Rooms ────────────────────────────────────────────────────────

    def create_room(self, game_name, host_name):
        factory = self.engines.get(game_name)
        if factory is None:
            raise ValueError(f"Unknown game: {game_name}. Available: {sorted(self.engines)}")

        code = generate_room_code()
        while code in self.rooms:
            code = generate_room_code()

        room = Room(code=code, host_id="", engine=factory(), game_name=game_name,
                    bot_policy=self.bot_policies.get(game_name))
        player_id, token = self._seat(room, host_name)
        room.host_id = player_id
        self.rooms[code] = room
        return code, player_id, token

    def join_room(self, code, name):
        room = self._get_room(code)
        if room.started:
            raise ValueError("Game already in progress")
        if room.is_full():
            raise ValueError("Room is full")
        return self._seat(room, name)

    def add_bot(self, code, requester_id, difficulty=1):
        """Seat a server-driven player. Bots get no token and never connect."""
        room = self._get_room(code, host_only=requester_id, action="add bots to")
        if room.bot_policy is None:
            raise ValueError(f"No bot available for {room.game_name}")
        if not isinstance(difficulty, int) or isinstance(difficulty, bool):
            raise ValueError(f"Invalid bot difficulty: {difficulty!r}")
        if room.started:
            raise ValueError("Game already in progress")
        if room.is_full():
            raise ValueError("Room is full")

        player_id = new_player_id()
        bots = sum(1 for s in room.players.values() if s.bot is not None)
        room.players[player_id] = Seat(player_id=player_id, name=f"Bot {bots + 1}",
                                       token=generate_token(), bot=difficulty)
        return player_id

    def start_game(self, code, requester_id):
        room = self._get_room(code, host_only=requester_id, action="start")
        if room.started:
            raise ValueError("Game already started")
        needed = room.engine.player_count_range[0]
        if len(room.players) < needed:
            raise ValueError(f"Need at least {needed} players")

        self._deal(room)
        room.started = True
        return room.game_state

    def restart_game(self, code, requester_id):
        """Replace the running match with a freshly dealt one, same seats."""
        room = self._get_room(code, host_only=requester_id, action="restart")
        if not room.started:
            raise ValueError("Game not started")
        self._deal(room)
        return room.game_state

    def submit_action(self, room, player_id, action):
        """
        Apply one action to the room's match.

        Returns (result, final). `final` is {"winner", "scores"} on the
        first accepted action after which the match is over, and None
        every other time. ValueError from the engine propagates.
        """
        if not room.started or room.game_state is None:
            raise ValueError("Game not started")

        result = room.engine.apply_action(room.game_state, player_id, action)
        if not result.accepted:
            return result, None
        room.game_state = result.new_state

        if room.result_sent:
            return result, None
        outcome = room.engine.get_result(room.game_state)
        if not outcome["over"]:
            return result, None
        room.result_sent = True
        return result, {"winner": outcome["winner"], "scores": outcome["scores"]}

    def play_bots(self, room):
        """
        Let bot seats answer the last accepted action.

        One bot move is always allowed; after that bots keep moving only
        while no human seat can act (a bot holding the attack or the
        citadel). Returns the (result, final) pair of every bot move.
        """
        played = []
        if room.bot_policy is None or room.game_state is None:
            return played
        for _ in range(BOT_MOVE_LIMIT):
            waiting = room.engine.get_waiting_for(room.game_state)
            bots = [pid for pid in waiting if room.players[pid].bot is not None]
            if not bots:
                break
            if played and len(bots) < len(waiting):
                break
            bot_id = bots[0]
            action = room.bot_policy(room.game_state, bot_id, room.players[bot_id].bot, room.bot_rng)
            if action is None:
                break
            result, final = self.submit_action(room, bot_id, action)
            if not result.accepted:
                break
            played.append((result, final))
        return played

    def _get_room(self, code, host_only=None, action=None):
        room = self.rooms.get(code)
        if room is None:
            raise ValueError(f"Room {code} not found")
        if host_only is not None and room.host_id != host_only:
            raise ValueError(f"Only the host can {action} the game")
        return room

    def _seat(self, room, name):
        player_id = new_player_id()
        token = generate_token()
        room.players[player_id] = Seat(player_id=player_id, name=name, token=token)
        self.tokens[token] = (room.code, player_id)
        return player_id, token

    def _deal(self, room):
        ids = list(room.players)
        names = [room.players[pid].name for pid in ids]
        room.game_state = room.engine.initial_state(ids, names)
        room.result_sent = False

    # ── Socket Loop ──────────────────────────────────────────────────

    async def handle_connection(self, websocket):
        """Serve one client until it disconnects."""
        bound = None   # (room_code, player_id) once authenticated

        try:
            async for raw in websocket:
                try:
                    msg = json.loads(raw)
                except json.JSONDecodeError:
                    await self._send(websocket, {"type": "error", "message": "Invalid JSON"})
                    continue
                if not isinstance(msg, dict):
                    await self._send(websocket, {"type": "error", "message": "Expected a JSON object"})
                    continue

                msg_type = msg.get("type")
                if msg_type in self.LOBBY_HANDLERS:
                    handler = getattr(self, self.LOBBY_HANDLERS[msg_type])
                    bound = await handler(websocket, msg) or bound
                    continue

                if bound is None:
                    await self._send(websocket, {"type": "error", "message": "Not authenticated. Send 'auth' first."})
                    continue
                room = self.rooms.get(bound[0])
                if room is None:
                    await self._send(websocket, {"type": "error", "message": "Room no longer exists"})
                    continue

                if msg_type not in self.ROOM_HANDLERS:
                    await self._send(websocket, {"type": "error", "message": f"Unknown message type: {msg_type}"})
                    continue
                handler = getattr(self, self.ROOM_HANDLERS[msg_type])
                await handler(room, bound[1], msg)

        except websockets.ConnectionClosed:
            pass
        finally:
            if bound is not None:
                await self._drop(*bound)

    async def _drop(self, room_code, player_id):
        room = self.rooms.get(room_code)
        if room is None or player_id not in room.players:
            return
        seat = room.players[player_id]
        seat.websocket = None
        await self._broadcast(room, {
            "type": "lobby_update",
            "players": room.player_list,
            "reason": f"{seat.name} disconnected",
        })

    # ── Lobby Messages ───────────────────────────────────────────────
    #
    # Handlers here may return (room_code, player_id) to bind the socket.

    LOBBY_HANDLERS = {
        "create": "_on_create",
        "join": "_on_join",
        "auth": "_on_auth",
        "reconnect": "_on_auth",
    }

    async def _on_create(self, websocket, msg):
        game_name = msg.get("game", "siege")
        try:
            code, player_id, token = self.create_room(game_name, msg.get("name", "Host"))
        except ValueError as e:
            await self._send(websocket, {"type": "error", "message": str(e)})
            return None
        await self._send(websocket, {
            "type": "created", "room_code": code, "player_id": player_id,
            "token": token, "game": game_name,
        })
        return None

    async def _on_join(self, websocket, msg):
        code = str(msg.get("room_code", "")).upper()
        try:
            player_id, token = self.join_room(code, msg.get("name", "Player"))
        except ValueError as e:
            await self._send(websocket, {"type": "error", "message": str(e)})
            return None
        await self._send(websocket, {
            "type": "joined", "room_code": code, "player_id": player_id, "token": token,
        })
        return None

    async def _on_auth(self, websocket, msg):
        """Bind this socket to the seat a token was issued for (also used to reconnect)."""
        entry = self.tokens.get(msg.get("token"))
        if entry is None:
            await self._send(websocket, {"type": "error", "message": "Invalid token"})
            return None
        room_code, player_id = entry
        room = self.rooms.get(room_code)
        if room is None or player_id not in room.players:
            await self._send(websocket, {"type": "error", "message": "Room or player not found"})
            return None

        seat = room.players[player_id]
        seat.websocket = websocket
        await self._send(websocket, {
            "type": "authenticated",
            "room_code": room_code,
            "player_id": player_id,
            "name": seat.name,
            "is_host": player_id == room.host_id,
            "game_started": room.started,
        })
        await self._broadcast(room, {
            "type": "lobby_update",
            "players": room.player_list,
            "game_started": room.started,
        })
        if room.started:
            await self._push_view(room, player_id)
        return room_code, player_id

    # ── Room Messages ────────────────────────────────────────────────

    ROOM_HANDLERS = {
        "start": "_on_start",
        "restart": "_on_restart",
        "action": "_on_action",
        "get_state": "_on_get_state",
        "chat": "_on_chat",
        "add_bot": "_on_add_bot",
    }

    async def _on_start(self, room, player_id, msg):
        await self._begin(room, player_id, self.start_game, "Game has begun!")

    async def _on_restart(self, room, player_id, msg):
        await self._begin(room, player_id, self.restart_game, "Match restarted")

    async def _begin(self, room, player_id, starter, announcement):
        try:
            starter(room.code, player_id)
        except ValueError as e:
            await self._send_to(room, player_id, {"type": "error", "message": str(e)})
            return
        print(f"[{room.code}] {announcement}")
        await self._broadcast(room, {"type": "game_started", "message": announcement})
        await self._push_views(room)

    async def _on_action(self, room, player_id, msg):
        action = msg.get("action")
        if not isinstance(action, dict):
            await self._send_to(room, player_id, {"type": "action_error", "message": "Action must be an object"})
            return
        try:
            result, final = self.submit_action(room, player_id, action)
        except ValueError as e:
            await self._send_to(room, player_id, {"type": "action_error", "message": str(e)})
            return

        if not result.accepted:
            await self._send_to(room, player_id, {"type": "action_rejected", "action": action})
            return

        await self._announce(room, result, final)
        for bot_result, bot_final in self.play_bots(room):
            await self._announce(room, bot_result, bot_final)

    async def _announce(self, room, result, final):
        """Broadcast an accepted action: its log, fresh views, and the result once."""
        if result.log:
            await self._broadcast(room, {"type": "game_log", "messages": result.log})
        await self._push_views(room)

        if final is not None:
            print(f"[{room.code}] Match over: {final['winner']}")
            await self._broadcast(room, {"type": "game_over", **final})

    async def _on_add_bot(self, room, player_id, msg):
        try:
            self.add_bot(room.code, player_id, msg.get("difficulty", 1))
        except ValueError as e:
            await self._send_to(room, player_id, {"type": "error", "message": str(e)})
            return
        await self._broadcast(room, {"type": "lobby_update", "players": room.player_list})

    async def _on_get_state(self, room, player_id, msg):
        await self._push_view(room, player_id)

    async def _on_chat(self, room, player_id, msg):
        await self._broadcast(room, {
            "type": "chat",
            "from": room.players[player_id].name,
            "message": msg.get("message", ""),
        })

    # ── Outgoing ─────────────────────────────────────────────────────

    async def _send(self, websocket, data):
        try:
            await websocket.send(json.dumps(data))
        except websockets.ConnectionClosed:
            pass

    async def _send_to(self, room, player_id, data):
        seat = room.players.get(player_id)
        if seat is not None and seat.connected:
            await self._send(seat.websocket, data)

    async def _broadcast(self, room, data):
        for seat in room.players.values():
            if seat.connected:
                await self._send(seat.websocket, data)

    async def _push_view(self, room, player_id):
        """Send one player their own view of the match."""
        if room.game_state is None:
            return
        engine = room.engine
        waiting_for = engine.get_waiting_for(room.game_state)
        await self._send_to(room, player_id, {
            "type": "game_state",
            "state": engine.get_player_view(room.game_state, player_id),
            "phase_info": engine.get_phase_info(room.game_state),
            "waiting_for": waiting_for,
            "your_turn": player_id in waiting_for,
        })

    async def _push_views(self, room):
        for player_id in room.players:
            await self._push_view(room, player_id)


# ── Entry Point ──────────────────────────────────────────────────────

async def run_server(host="0.0.0.0", port=8765, hand_size=5, scoring_mode="formation"):
    from flagfall.siege.ai import bot_move
    from flagfall.siege.engine import SiegeEngine

    server = GameServer()
    server.register_engine(
        "siege",
        partial(SiegeEngine, hand_size=hand_size, scoring_mode=scoring_mode),
        bot_policy=bot_move,
    )

    print(f"Siege server on ws://{host}:{port} (hand size {hand_size}, {scoring_mode} scoring)")
    async with websockets.serve(server.handle_connection, host, port):
        await asyncio.Future()


def main(argv=None):
    parser = argparse.ArgumentParser(description="Siege room server")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8765)
    parser.add_argument("--hand-size", type=int, default=5, choices=(3, 4, 5))
    parser.add_argument("--scoring", default="formation", choices=("formation", "legacy"))
    args = parser.parse_args(argv)
    try:
        asyncio.run(run_server(args.host, args.port, args.hand_size, args.scoring))
    except KeyboardInterrupt:
        print("Server stopped")


if __name__ == "__main__":
    main()
