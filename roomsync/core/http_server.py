import asyncio
import json

from aiohttp import web
from google.api_core import exceptions as gcloud_exceptions

from roomsync.services.logging import setup_logging
from roomsync.services.alarms import models, policy
from roomsync.services.alarms import store as alarm_store
from roomsync.services.alarms.cloud import functions as alarm_functions
from roomsync.services.alarms.config import get_settings

TAG = __name__


class SimpleHttpServer:
    def __init__(self, config: dict, store=None):
        self.config = config
        self.logger = setup_logging()
        self._store = store

    @property
    def store(self):
        if self._store is None:
            self._store = alarm_store.get_store()
        return self._store

    def build_app(self) -> web.Application:
        app = web.Application()
        app.add_routes(
            [
                # Local stand-in for the Cloud Scheduler probe
                web.post("/alarms/scan", self.handle_scan),
                web.post(
                    "/alarms/triggers/{trigger_id}/dismiss", self.handle_dismiss
                ),
                web.post("/alarms/triggers/{trigger_id}/ack", self.handle_ack),
            ]
        )
        return app

    async def start(self):
        server_config = self.config["server"]
        host = server_config.get("ip", "0.0.0.0")
        port = int(server_config.get("http_port", 8003))

        runner = web.AppRunner(self.build_app())
        await runner.setup()
        site = web.TCPSite(runner, host, port)
        await site.start()
        self.logger.bind(tag=TAG).info(f"HTTP server listening on {host}:{port}")

        while True:
            await asyncio.sleep(3600)

    async def _read_json(self, request: web.Request):
        try:
            data = await request.json()
        except Exception:
            text = await request.text()
            try:
                data = json.loads(text)
            except Exception:
                return None
        return data if isinstance(data, dict) else None

    @staticmethod
    def _error(message: str, status: int) -> web.Response:
        return web.json_response({"ok": False, "error": message}, status=status)

    async def handle_scan(self, request: web.Request) -> web.Response:
        try:
            summary = await asyncio.to_thread(alarm_functions.run_probe)
        except gcloud_exceptions.GoogleAPICallError as exc:
            self.logger.bind(tag=TAG).error(f"Probe failed: {exc}")
            return self._error("store unavailable", 503)
        return web.json_response(summary)

    async def handle_dismiss(self, request: web.Request) -> web.Response:
        """Dismiss a ringing trigger on behalf of a room member.

        Body JSON: {"userId": "user-1"}
        ``applied`` is false when someone else dismissed it first; that is
        still a successful response.
        """
        trigger_id = request.match_info["trigger_id"]
        data = await self._read_json(request)
        if data is None:
            return self._error("invalid json", 400)
        user_id = str(data.get("userId") or data.get("user_id") or "").strip()
        if not user_id:
            return self._error("userId is required", 400)

        try:
            trigger = await asyncio.to_thread(self.store.get_trigger, trigger_id)
            if trigger.is_ringing:
                alarm = await asyncio.to_thread(
                    self.store.get_alarm, trigger.room_id, trigger.alarm_id
                )
                acknowledgments = []
                if alarm.condition_type == models.DismissCondition.MULTIPLE_ACK:
                    acknowledgments = await asyncio.to_thread(
                        self.store.list_acknowledgments, trigger_id
                    )
                ring_count = policy.elapsed_ring_count(
                    trigger.triggered_at, get_settings().ring_interval
                )
                if not policy.can_dismiss(alarm, user_id, ring_count, acknowledgments):
                    message = policy.status_message(
                        alarm, user_id, ring_count, acknowledgments
                    )
                    return self._error(message or "dismissal not allowed", 403)
            outcome = await asyncio.to_thread(
                self.store.update_trigger_status,
                trigger_id,
                models.TriggerStatus.DISMISSED,
                user_id,
            )
        except alarm_store.TriggerNotFound:
            return self._error(f"trigger {trigger_id} not found", 404)
        except alarm_store.AlarmNotFound:
            return self._error(f"alarm for trigger {trigger_id} not found", 404)
        except gcloud_exceptions.GoogleAPICallError as exc:
            self.logger.bind(tag=TAG).warning(f"Dismiss of {trigger_id} failed: {exc}")
            return self._error("store unavailable", 503)

        return web.json_response(
            {"ok": True, "applied": outcome == models.DismissOutcome.APPLIED}
        )

    async def handle_ack(self, request: web.Request) -> web.Response:
        trigger_id = request.match_info["trigger_id"]
        data = await self._read_json(request)
        if data is None:
            return self._error("invalid json", 400)
        user_id = str(data.get("userId") or data.get("user_id") or "").strip()
        if not user_id:
            return self._error("userId is required", 400)

        try:
            await asyncio.to_thread(self.store.get_trigger, trigger_id)
            created = await asyncio.to_thread(
                self.store.acknowledge_trigger, trigger_id, user_id
            )
            count = len(
                await asyncio.to_thread(self.store.list_acknowledgments, trigger_id)
            )
        except alarm_store.TriggerNotFound:
            return self._error(f"trigger {trigger_id} not found", 404)
        except gcloud_exceptions.GoogleAPICallError as exc:
            self.logger.bind(tag=TAG).warning(f"Ack of {trigger_id} failed: {exc}")
            return self._error("store unavailable", 503)

        return web.json_response({"ok": True, "created": created, "count": count})

