"""JSON HTTP API for a presentation layer.

A small HTTP/1.1 server (stdlib asyncio only) over a ``ChatService``:

- ``GET  /api/status``                    — counters and active device
- ``GET  /api/devices``                   — all discovered devices
- ``GET  /api/connected``                 — connected devices with message counts
- ``GET  /api/threads/<device_id>``       — one conversation thread
- ``POST /api/scan``                      — run a discovery scan
- ``POST /api/devices/<id>/connect``      — connect
- ``POST /api/devices/<id>/disconnect``   — disconnect
- ``POST /api/devices/<id>/select``       — make active
- ``POST /api/messages``                  — ``{"content", "deviceId"?}``
- ``POST /api/smart-reply``               — ``{"lastMessage"}`` → ``{"suggestions"}``

Start via ``ChatAPI.start()`` inside the service's event loop.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Awaitable, Callable
from urllib.parse import unquote, urlparse

from loguru import logger

from bluechat.chat.errors import (
    ConnectFailedError,
    InvalidMessageError,
    NotConnectedError,
    UnknownDeviceError,
)
from bluechat.chat.service import ChatService
from bluechat.providers.smart_reply import SmartReplyService

_STATUS_TEXT = {
    200: "OK", 400: "Bad Request", 404: "Not Found", 405: "Method Not Allowed",
    409: "Conflict", 413: "Payload Too Large", 500: "Internal Server Error",
    502: "Bad Gateway", 503: "Service Unavailable",
}
_MAX_BODY = 64 * 1024


class _HTTPError(Exception):
    def __init__(self, status: int, message: str):
        super().__init__(message)
        self.status = status


class ChatAPI:
    """Async HTTP server exposing a ``ChatService`` as JSON.

    Parameters
    ----------
    service:
        The chat service to expose.
    smart_reply:
        Optional suggestion service; without it ``/api/smart-reply``
        answers 503.
    host / port:
        Listen address. Port 0 picks a free port (see ``bound_port``).
    """

    def __init__(
        self,
        service: ChatService,
        smart_reply: SmartReplyService | None = None,
        *,
        host: str = "127.0.0.1",
        port: int = 0,
    ) -> None:
        self.service = service
        self.smart_reply = smart_reply
        self.host = host
        self.port = port
        self._server: asyncio.AbstractServer | None = None

    # -- lifecycle -----------------------------------------------------------

    async def start(self) -> None:
        self._server = await asyncio.start_server(
            self._handle_connection, self.host, self.port,
        )
        logger.info("[ChatAPI] started on http://{}:{}", self.host, self.bound_port)

    async def stop(self) -> None:
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
            logger.info("[ChatAPI] stopped")

    @property
    def bound_port(self) -> int:
        if self._server is None or not self._server.sockets:
            return self.port
        return self._server.sockets[0].getsockname()[1]

    # -- HTTP handling -------------------------------------------------------

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        try:
            head = await asyncio.wait_for(reader.readuntil(b"\r\n\r\n"), timeout=5.0)
            lines = head.decode("utf-8", errors="replace").split("\r\n")
            parts = lines[0].split(" ")
            if len(parts) < 2:
                await self._send_json(writer, {"error": "bad request line"}, 400)
                return

            method, path = parts[0].upper(), urlparse(parts[1]).path
            headers: dict[str, str] = {}
            for line in lines[1:]:
                if ":" in line:
                    key, value = line.split(":", 1)
                    headers[key.strip().lower()] = value.strip()

            try:
                length = int(headers.get("content-length", "0") or 0)
            except ValueError:
                length = -1
            if length < 0:
                await self._send_json(writer, {"error": "invalid Content-Length"}, 400)
                return
            if length > _MAX_BODY:
                await self._send_json(writer, {"error": "body too large"}, 413)
                return
            body = b""
            if length:
                body = await asyncio.wait_for(reader.readexactly(length), timeout=5.0)

            status, payload = await self._dispatch(method, path, body)
            await self._send_json(writer, payload, status)

        except (asyncio.TimeoutError, asyncio.IncompleteReadError, ConnectionError, OSError):
            pass
        except Exception as exc:
            logger.debug("[ChatAPI] request error: {}", exc)
        finally:
            try:
                writer.close()
                await writer.wait_closed()
            except Exception:
                pass

    async def _dispatch(self, method: str, path: str, body: bytes) -> tuple[int, Any]:
        try:
            handler, args = self._route(method, path)
            data = self._parse_body(body) if method == "POST" else {}
            return 200, await handler(data, *args)
        except _HTTPError as exc:
            return exc.status, {"error": str(exc)}
        except UnknownDeviceError as exc:
            return 404, {"error": str(exc)}
        except (NotConnectedError, ConnectFailedError) as exc:
            return 409, {"error": str(exc)}
        except (InvalidMessageError, ValueError) as exc:
            return 400, {"error": str(exc)}
        except Exception as exc:
            logger.warning("[ChatAPI] handler error for {} {}: {}", method, path, exc)
            return 500, {"error": str(exc)}

    def _route(
        self, method: str, path: str,
    ) -> tuple[Callable[..., Awaitable[Any]], tuple[str, ...]]:
        get_routes: dict[str, Callable[..., Awaitable[Any]]] = {
            "/api/status": self._api_status,
            "/api/devices": self._api_devices,
            "/api/connected": self._api_connected,
        }
        post_routes: dict[str, Callable[..., Awaitable[Any]]] = {
            "/api/scan": self._api_scan,
            "/api/messages": self._api_send,
            "/api/smart-reply": self._api_smart_reply,
        }
        device_actions = {
            "connect": self._api_connect,
            "disconnect": self._api_disconnect,
            "select": self._api_select,
        }

        segments = [unquote(s) for s in path.strip("/").split("/")]
        if path in get_routes or path in post_routes:
            routes = get_routes if method == "GET" else post_routes
            if method not in ("GET", "POST") or path not in routes:
                raise _HTTPError(405, "method not allowed")
            return routes[path], ()

        if len(segments) == 3 and segments[:2] == ["api", "threads"]:
            if method != "GET":
                raise _HTTPError(405, "method not allowed")
            return self._api_thread, (segments[2],)

        if len(segments) == 4 and segments[:2] == ["api", "devices"] and segments[3] in device_actions:
            if method != "POST":
                raise _HTTPError(405, "method not allowed")
            return device_actions[segments[3]], (segments[2],)

        raise _HTTPError(404, "not found")

    @staticmethod
    def _parse_body(body: bytes) -> dict[str, Any]:
        if not body.strip():
            return {}
        try:
            data = json.loads(body.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise _HTTPError(400, f"invalid JSON body: {exc}") from exc
        if not isinstance(data, dict):
            raise _HTTPError(400, "JSON body must be an object")
        return data

    async def _send_json(
        self,
        writer: asyncio.StreamWriter,
        data: Any,
        status: int = 200,
    ) -> None:
        body = json.dumps(data, ensure_ascii=False, default=str).encode("utf-8")
        header = (
            f"HTTP/1.1 {status} {_STATUS_TEXT.get(status, 'Error')}\r\n"
            f"Content-Type: application/json\r\n"
            f"Content-Length: {len(body)}\r\n"
            f"Access-Control-Allow-Origin: *\r\n"
            f"Connection: close\r\n"
            f"\r\n"
        )
        writer.write(header.encode() + body)
        await writer.drain()

    # -- API endpoints -------------------------------------------------------

    async def _api_status(self, data: dict[str, Any]) -> dict[str, Any]:
        return self.service.status()

    async def _api_devices(self, data: dict[str, Any]) -> list[dict[str, Any]]:
        return [d.to_dict() for d in self.service.devices()]

    async def _api_connected(self, data: dict[str, Any]) -> list[dict[str, Any]]:
        active = self.service.active_device
        result = []
        for dev in self.service.connected_devices():
            entry = dev.to_dict()
            entry["message_count"] = self.service.message_count(dev.id)
            entry["active"] = active is not None and active.id == dev.id
            result.append(entry)
        return result

    async def _api_thread(self, data: dict[str, Any], device_id: str) -> dict[str, Any]:
        if device_id not in self.service.registry and not self.service.message_count(device_id):
            raise UnknownDeviceError(device_id)
        return {
            "device_id": device_id,
            "messages": [m.to_dict() for m in self.service.thread(device_id)],
        }

    async def _api_scan(self, data: dict[str, Any]) -> dict[str, Any]:
        duration = data.get("duration")
        new = await self.service.scan(duration=float(duration) if duration is not None else None)
        return {"new": new, "devices": [d.to_dict() for d in self.service.devices()]}

    async def _api_connect(self, data: dict[str, Any], device_id: str) -> dict[str, Any]:
        return self.service.connect(device_id).to_dict()

    async def _api_disconnect(self, data: dict[str, Any], device_id: str) -> dict[str, Any]:
        return self.service.disconnect(device_id).to_dict()

    async def _api_select(self, data: dict[str, Any], device_id: str) -> dict[str, Any]:
        return self.service.select(device_id).to_dict()

    async def _api_send(self, data: dict[str, Any]) -> dict[str, Any]:
        content = data.get("content")
        if not isinstance(content, str):
            raise InvalidMessageError("content must be a string")
        device_id = data.get("deviceId", data.get("device_id"))
        return self.service.send_message(content, device_id).to_dict()

    async def _api_smart_reply(self, data: dict[str, Any]) -> dict[str, Any]:
        if self.smart_reply is None:
            raise _HTTPError(503, "smart reply is not configured")
        last_message = data.get("lastMessage", data.get("last_message"))
        if not isinstance(last_message, str) or not last_message.strip():
            raise _HTTPError(400, "lastMessage is required")
        try:
            suggestions = await self.smart_reply.suggest(last_message)
        except Exception as exc:
            logger.warning("[ChatAPI] smart reply failed: {}", exc)
            raise _HTTPError(502, f"suggestion request failed: {exc}") from exc
        return {"suggestions": suggestions}
