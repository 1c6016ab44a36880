"""
Kindred - Web Dashboard
Event hub the agent reports into, plus a small local JSON API for state-change commands.
"""

import asyncio
import logging
import threading
import time
from collections import deque
from datetime import date
from typing import Any, Callable, Dict, List, Optional

from flask import Flask, jsonify, request

import constants

logger = logging.getLogger("dashboard")

# Commands the agent registers handlers for
ACCEPT_PENDING = "accept-pending"
SET_BOT_STATE = "set-bot-state"
TOGGLE_AUTO_REPLY = "toggle-auto-reply"
CHANGE_PROVIDER = "change-provider"
RESET_AWAY = "reset-away"

COMMAND_TIMEOUT = 10.0


class DashboardHub:
    """Collects activity and state for the dashboard; routes commands back to the agent.

    Events are fire-and-forget: listener failures are logged and dropped.
    Safe to call from the bot's event loop and the Flask thread.
    """

    def __init__(self, activity_limit: int = constants.ACTIVITY_LOG_LIMIT):
        self._lock = threading.Lock()
        self.activity: deque = deque(maxlen=activity_limit)
        self.last_prompt: Optional[dict] = None
        self.last_response: Optional[dict] = None
        self.bot_state: Dict[str, Any] = {}
        self.pending_requests: Dict[str, dict] = {}
        self.message_count = 0
        self._count_day = date.today()

        self._listeners: List[Callable[[str, dict], None]] = []
        self._handlers: Dict[str, Callable[[dict], Any]] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    # --- Events out ---

    def subscribe(self, listener: Callable[[str, dict], None]):
        self._listeners.append(listener)

    def _emit(self, event: str, data: dict):
        for listener in list(self._listeners):
            try:
                listener(event, data)
            except Exception as e:
                logger.warning(f"Dashboard listener failed on {event}: {e}")

    def log_activity(self, line: str):
        entry = {"time": int(time.time() * 1000), "message": line}
        with self._lock:
            self.activity.append(entry)
        self._emit("activity-log", entry)

    def prompt_submitted(self, user: dict, prompt: Any, is_batched: bool, has_reply_context: bool, provider: str):
        data = {
            "user": user,
            "prompt": prompt,
            "isBatched": is_batched,
            "hasReplyContext": has_reply_context,
            "provider": provider,
            "time": int(time.time() * 1000),
        }
        with self._lock:
            self.last_prompt = data
        self._emit("prompt-data", data)

    def response_received(self, user: dict, text: str, provider: str, was_fallback: bool):
        data = {
            "user": user,
            "response": text,
            "provider": provider,
            "wasFallback": was_fallback,
            "time": int(time.time() * 1000),
        }
        with self._lock:
            self.last_response = data
        self._emit("prompt-response", data)

    def update_bot_state(self, state: dict):
        with self._lock:
            self.bot_state = dict(state)
        self._emit("bot-state", dict(state))

    def set_pending_requests(self, pending: Dict[str, dict]):
        with self._lock:
            self.pending_requests = dict(pending)
        self._emit("pending-requests", {"requests": list(pending.values())})

    def increment_message_count(self, today: date = None) -> int:
        """Count a reply; the counter starts over each day."""
        today = today or date.today()
        with self._lock:
            if today != self._count_day:
                self._count_day = today
                self.message_count = 0
            self.message_count += 1
            count = self.message_count
        self._emit("message-count", {"count": count})
        return count

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "botState": dict(self.bot_state),
                "messageCount": self.message_count,
                "pendingRequests": list(self.pending_requests.values()),
                "lastPrompt": self.last_prompt,
                "lastResponse": self.last_response,
            }

    def recent_activity(self, limit: int = 50) -> List[dict]:
        with self._lock:
            return list(self.activity)[-limit:]

    # --- Commands in ---

    def bind_loop(self, loop: asyncio.AbstractEventLoop):
        """Run command handlers on this loop (the bot's)."""
        self._loop = loop

    def register_command(self, name: str, handler: Callable[[dict], Any]):
        self._handlers[name] = handler

    def command(self, name: str, payload: dict = None) -> Any:
        """Run a registered command handler, hopping onto the bot loop if bound."""
        handler = self._handlers.get(name)
        if handler is None:
            raise KeyError(name)
        payload = payload or {}

        if self._loop is None or not self._loop.is_running():
            return handler(payload)

        async def _run():
            return handler(payload)

        future = asyncio.run_coroutine_threadsafe(_run(), self._loop)
        return future.result(timeout=COMMAND_TIMEOUT)


# --- JSON API ---

def create_app(hub: DashboardHub) -> Flask:
    app = Flask(__name__)

    def _run(name: str, payload: dict = None):
        try:
            result = hub.command(name, payload)
        except KeyError:
            return jsonify({"ok": False, "error": f"unknown command {name}"}), 404
        except ValueError as e:
            return jsonify({"ok": False, "error": str(e)}), 400
        return jsonify({"ok": True, "result": result})

    @app.route('/api/state')
    def api_state():
        return jsonify(hub.snapshot())

    @app.route('/api/activity')
    def api_activity():
        limit = request.args.get('limit', 50, type=int)
        return jsonify({"activity": hub.recent_activity(limit)})

    @app.route('/api/pending')
    def api_pending():
        return jsonify({"requests": hub.snapshot()["pendingRequests"]})

    @app.route('/api/pending/<user_id>/accept', methods=['POST'])
    def api_accept_pending(user_id):
        return _run(ACCEPT_PENDING, {"userId": user_id})

    @app.route('/api/bot-state', methods=['POST'])
    def api_bot_state():
        return _run(SET_BOT_STATE, request.get_json(silent=True) or {})

    @app.route('/api/auto-reply', methods=['POST'])
    def api_auto_reply():
        data = request.get_json(silent=True) or {}
        if not data.get("userId"):
            return jsonify({"ok": False, "error": "userId is required"}), 400
        return _run(TOGGLE_AUTO_REPLY, data)

    @app.route('/api/provider', methods=['POST'])
    def api_provider():
        data = request.get_json(silent=True) or {}
        if not data.get("provider"):
            return jsonify({"ok": False, "error": "provider is required"}), 400
        return _run(CHANGE_PROVIDER, data)

    @app.route('/api/away/reset', methods=['POST'])
    def api_reset_away():
        return _run(RESET_AWAY)

    return app


# --- Dashboard Runner ---

def start_dashboard(hub: DashboardHub, host: str = constants.DASHBOARD_DEFAULT_HOST,
                    port: int = constants.DASHBOARD_DEFAULT_PORT) -> threading.Thread:
    """Start the dashboard API in a background thread."""
    app = create_app(hub)

    # Disable Flask's default request logging
    logging.getLogger('werkzeug').setLevel(logging.ERROR)

    thread = threading.Thread(
        target=lambda: app.run(host=host, port=port, debug=False, use_reloader=False),
        daemon=True
    )
    thread.start()
    return thread
