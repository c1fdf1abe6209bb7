"""Tests for enoslink.client."""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import re
import time
from pathlib import Path
from typing import Any
from unittest.mock import patch

import aiohttp
import pytest
from aiohttp import test_utils, web
from aioresponses import aioresponses

from enoslink._constants import (
    ACCESS_TOKEN_HEADER,
    FILES_PATH,
    INTEGRATION_PATH,
    MESSAGE_PART,
    PROGRESS_CHUNK_SIZE,
    TOKEN_GET_PATH,
)
from enoslink.auth import AccessToken
from enoslink.builders import MeasurepointPostRequestBuilder
from enoslink.client import Connection
from enoslink.config import ConnectionConfig
from enoslink.errors import AuthError, EncodingError, TransportError
from enoslink.messages import DeviceRef, FileMode, Request
from enoslink.transport import build_publish_parts

BROKER = "https://broker.example.com"
TOKEN_SERVER = "https://token.example.com"

_TOKEN_URL = TOKEN_SERVER + TOKEN_GET_PATH
_PUBLISH_URL = re.compile(rf"^{re.escape(BROKER + INTEGRATION_PATH)}\?")
_FILES_URL = re.compile(rf"^{re.escape(BROKER + FILES_PATH)}\?")
_TOKEN_RESPONSE = {"status": 0, "msg": "Success", "data": {"accessToken": "tok", "expire": 7200}}
_OK = {"code": 0, "msg": "OK", "requestId": "r-1", "data": None}

A1 = DeviceRef(asset_id="A1")


def _config(**overrides: Any) -> ConnectionConfig:
    values: dict[str, Any] = {
        "broker_url": BROKER,
        "token_server_url": TOKEN_SERVER,
        "app_key": "key",
        "app_secret": "secret",
        "org_id": "org1",
    }
    values.update(overrides)
    return ConnectionConfig(**values)


def _calls(m: aioresponses, method: str, prefix: str) -> list[tuple[Any, Any]]:
    return [
        (url, call)
        for (meth, url), calls in m.requests.items()
        if meth == method and str(url).startswith(prefix)
        for call in calls
    ]


def _simple_request() -> Request:
    return MeasurepointPostRequestBuilder().add_measurepoint(A1, 1000, {"temp": 25}).build()


class _Recorder:
    def __init__(self) -> None:
        self.responses: list[Any] = []
        self.failures: list[Exception] = []

    def on_response(self, result: Any) -> None:
        self.responses.append(result)

    def on_failure(self, failure: Exception) -> None:
        self.failures.append(failure)


# ---------------------------------------------------------------------------
# Construction and lifecycle
# ---------------------------------------------------------------------------


class TestConnectionConstruction:
    def test_from_config(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({**dataclasses.asdict(_config()), "use_lark": True}))
        conn = Connection.from_config(path)
        assert conn.config.org_id == "org1"
        assert conn.use_lark is True

    def test_from_config_missing(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            Connection.from_config(tmp_path / "nope.json")

    def test_mode_switches(self):
        conn = Connection(_config())
        assert conn.use_lark is False
        assert conn.auto_upload is True
        conn.use_lark = True
        conn.auto_upload = False
        assert conn.use_lark is True
        assert conn.auto_upload is False
        assert conn.config.auto_upload is False

    async def test_close_leaves_caller_session_open(self):
        async with aiohttp.ClientSession() as session:
            async with Connection(_config(), session=session):
                pass
            assert not session.closed


class TestAuth:
    async def test_auth_fetches_token_once(self):
        with aioresponses() as m:
            m.post(_TOKEN_URL, payload=_TOKEN_RESPONSE)
            async with Connection(_config()) as conn:
                await conn.auth()
                await conn.auth()

        assert len(_calls(m, "POST", _TOKEN_URL)) == 1

    async def test_auth_failure(self):
        with aioresponses() as m:
            m.post(_TOKEN_URL, payload={"status": 1, "msg": "bad signature"})
            async with Connection(_config()) as conn:
                with pytest.raises(AuthError):
                    await conn.auth()


# ---------------------------------------------------------------------------
# Publish
# ---------------------------------------------------------------------------


class TestPublish:
    async def test_direct_publish(self, tmp_path):
        (tmp_path / "a.txt").write_bytes(b"hello")
        request = (
            MeasurepointPostRequestBuilder()
            .add_measurepoint(A1, 1000, {"temp": 25})
            .add_measurepoint(A1, 1000, {"log": tmp_path / "a.txt"})
            .build()
        )
        with aioresponses() as m:
            m.post(_TOKEN_URL, payload=_TOKEN_RESPONSE)
            m.post(_PUBLISH_URL, payload=_OK)
            with patch(
                "enoslink.client.build_publish_parts", wraps=build_publish_parts
            ) as parts_spy:
                async with Connection(_config()) as conn:
                    response = await conn.publish(request)

        assert response.is_success
        assert response.request_id == "r-1"

        [(url, call)] = _calls(m, "POST", BROKER)
        assert url.query["action"] == "postMeasurepoint"
        assert url.query["orgId"] == "org1"
        assert "useLark" not in url.query
        assert call.kwargs["headers"] == {ACCESS_TOKEN_HEADER: "tok"}

        sent, mode = parts_spy.call_args.args
        assert mode is FileMode.DIRECT
        assert sent.id == "1"
        assert sent.version == "1.1"
        envelope = json.loads(sent.encode())
        assert envelope["method"] == "postMeasurepoint"
        [entry] = sent.files
        assert envelope["params"][0]["measurepoints"]["log"] == f"local://{entry.local_name}"

    async def test_original_request_is_not_modified(self):
        request = _simple_request()
        with aioresponses() as m:
            m.post(_TOKEN_URL, payload=_TOKEN_RESPONSE)
            m.post(_PUBLISH_URL, payload=_OK)
            async with Connection(_config()) as conn:
                await conn.publish(request)

        assert request.id is None
        assert request.version is None

    async def test_caller_supplied_id_is_kept(self):
        request = MeasurepointPostRequestBuilder(request_id="mine").add_measurepoint(
            A1, 1, {"a": 1}
        ).build()
        with aioresponses() as m:
            m.post(_TOKEN_URL, payload=_TOKEN_RESPONSE)
            m.post(_PUBLISH_URL, payload=_OK)
            with patch(
                "enoslink.client.build_publish_parts", wraps=build_publish_parts
            ) as parts_spy:
                async with Connection(_config()) as conn:
                    await conn.publish(request)

        assert parts_spy.call_args.args[0].id == "mine"

    async def test_broker_failure_code_is_returned(self):
        with aioresponses() as m:
            m.post(_TOKEN_URL, payload=_TOKEN_RESPONSE)
            m.post(_PUBLISH_URL, payload={"code": 1105, "msg": "invalid measurepoint"})
            async with Connection(_config()) as conn:
                response = await conn.publish(_simple_request())

        assert not response.is_success
        assert response.msg == "invalid measurepoint"

    async def test_auth_failure_sends_nothing_to_broker(self):
        with aioresponses() as m:
            m.post(_TOKEN_URL, payload={"status": 1, "msg": "bad signature"})
            async with Connection(_config()) as conn:
                with pytest.raises(AuthError):
                    await conn.publish(_simple_request())

        assert _calls(m, "POST", BROKER) == []

    async def test_transport_failure(self):
        with aioresponses() as m:
            m.post(_TOKEN_URL, payload=_TOKEN_RESPONSE)
            m.post(_PUBLISH_URL, exception=aiohttp.ClientConnectionError("reset"))
            async with Connection(_config()) as conn:
                with pytest.raises(TransportError):
                    await conn.publish(_simple_request())

    async def test_missing_attachment_in_direct_mode(self, tmp_path):
        path = tmp_path / "gone.txt"
        path.write_bytes(b"x")
        request = MeasurepointPostRequestBuilder().add_measurepoint(A1, 1, {"f": path}).build()
        path.unlink()
        with aioresponses() as m:
            m.post(_TOKEN_URL, payload=_TOKEN_RESPONSE)
            async with Connection(_config()) as conn:
                with pytest.raises(EncodingError):
                    await conn.publish(request)

        assert _calls(m, "POST", BROKER) == []

    async def test_progress_reported_while_body_is_sent(self, tmp_path):
        data = b"z" * (PROGRESS_CHUNK_SIZE * 3 + 100)
        (tmp_path / "big.bin").write_bytes(data)
        request = MeasurepointPostRequestBuilder().add_measurepoint(
            A1, 1000, {"blob": tmp_path / "big.bin"}
        ).build()
        received: dict[str, bytes] = {}

        async def handle(req: web.Request) -> web.Response:
            reader = await req.multipart()
            async for part in reader:
                received[part.name] = bytes(await part.read())
            return web.json_response({"code": 0, "msg": "OK", "requestId": "r-9"})

        app = web.Application()
        app.router.add_post(INTEGRATION_PATH, handle)
        seen: list[tuple[int, int]] = []
        now = time.time()
        token = AccessToken("tok", issued_at=now, expires_at=now + 7200)

        async with test_utils.TestServer(app) as server:
            config = _config(broker_url=str(server.make_url("/")))
            with patch("enoslink.auth._http_get_token", return_value=token):
                async with Connection(config) as conn:
                    response = await conn.publish(
                        request, progress=lambda written, total: seen.append((written, total))
                    )

        assert response.request_id == "r-9"
        [entry] = request.files
        assert received[entry.local_name] == data
        total = len(received[MESSAGE_PART]) + len(data)
        assert len(seen) > 1
        assert [w for w, _ in seen] == sorted({w for w, _ in seen})
        assert all(t == total for _, t in seen)
        assert seen[-1] == (total, total)

    async def test_concurrent_publishes_get_distinct_increasing_ids(self):
        with aioresponses() as m:
            m.post(_TOKEN_URL, payload=_TOKEN_RESPONSE)
            m.post(_PUBLISH_URL, payload=_OK, repeat=True)
            with patch(
                "enoslink.client.build_publish_parts", wraps=build_publish_parts
            ) as parts_spy:
                async with Connection(_config()) as conn:
                    responses = await asyncio.gather(
                        *(conn.publish(_simple_request()) for _ in range(10))
                    )

        assert all(r.is_success for r in responses)
        ids = [int(c.args[0].id) for c in parts_spy.call_args_list]
        assert ids == sorted(ids)
        assert len(set(ids)) == 10
        assert len(_calls(m, "POST", _TOKEN_URL)) == 1


class TestIndirectPublish:
    def _request(self, tmp_path: Path, count: int) -> Request:
        values = {}
        for i in range(count):
            path = tmp_path / f"f{i}.bin"
            path.write_bytes(f"bytes-{i}".encode())
            values[f"file{i}"] = path
        return MeasurepointPostRequestBuilder().add_measurepoint(A1, 1000, values).build()

    def _response(self, request: Request) -> dict[str, Any]:
        return {
            "code": 0,
            "msg": "OK",
            "data": {
                "uriInfoList": [
                    {
                        "filename": entry.local_name,
                        "uploadUrl": f"https://store.example.com/{i}",
                        "headers": {"Content-Type": "application/octet-stream"},
                    }
                    for i, entry in enumerate(request.files)
                ]
            },
        }

    async def test_uploads_to_presigned_urls(self, tmp_path):
        request = self._request(tmp_path, 2)
        with aioresponses() as m:
            m.post(_TOKEN_URL, payload=_TOKEN_RESPONSE)
            m.post(_PUBLISH_URL, payload=self._response(request))
            m.put("https://store.example.com/0")
            m.put("https://store.example.com/1")
            async with Connection(_config(use_lark=True)) as conn:
                response = await conn.publish(request)

        assert response.is_success
        [(url, _)] = _calls(m, "POST", BROKER)
        assert url.query["useLark"] == "true"

        puts = {str(u): call for u, call in _calls(m, "PUT", "https://store.example.com")}
        assert set(puts) == {"https://store.example.com/0", "https://store.example.com/1"}
        first = puts["https://store.example.com/0"]
        assert first.kwargs["data"] == b"bytes-0"
        assert first.kwargs["headers"] == {"Content-Type": "application/octet-stream"}

    async def test_per_call_override(self, tmp_path):
        request = self._request(tmp_path, 1)
        with aioresponses() as m:
            m.post(_TOKEN_URL, payload=_TOKEN_RESPONSE)
            m.post(_PUBLISH_URL, payload=self._response(request))
            m.put("https://store.example.com/0")
            async with Connection(_config()) as conn:
                await conn.publish(request, file_mode=FileMode.INDIRECT)

        [(url, _)] = _calls(m, "POST", BROKER)
        assert url.query["useLark"] == "true"

    async def test_failed_upload_does_not_affect_others(self, tmp_path, caplog):
        request = self._request(tmp_path, 3)
        with aioresponses() as m:
            m.post(_TOKEN_URL, payload=_TOKEN_RESPONSE)
            m.post(_PUBLISH_URL, payload=self._response(request))
            m.put("https://store.example.com/0")
            m.put("https://store.example.com/1", status=500)
            m.put("https://store.example.com/2")
            with caplog.at_level(logging.ERROR, logger="enoslink.upload"):
                async with Connection(_config(use_lark=True)) as conn:
                    response = await conn.publish(request)

        assert response.is_success
        puts = {str(u) for u, _ in _calls(m, "PUT", "https://store.example.com")}
        assert puts == {
            "https://store.example.com/0",
            "https://store.example.com/1",
            "https://store.example.com/2",
        }
        assert "f1.bin" in caplog.text

    async def test_auto_upload_off(self, tmp_path):
        request = self._request(tmp_path, 1)
        with aioresponses() as m:
            m.post(_TOKEN_URL, payload=_TOKEN_RESPONSE)
            m.post(_PUBLISH_URL, payload=self._response(request))
            async with Connection(_config(use_lark=True, auto_upload=False)) as conn:
                response = await conn.publish(request)

        [info] = response.uri_infos
        assert info.filename == request.files[0].local_name
        assert info.filename != "f0.bin"
        assert request.file_for(info.filename).source == tmp_path / "f0.bin"
        assert _calls(m, "PUT", "https://store.example.com") == []


class TestPublishAsync:
    async def test_callback_receives_response(self):
        recorder = _Recorder()
        with aioresponses() as m:
            m.post(_TOKEN_URL, payload=_TOKEN_RESPONSE)
            m.post(_PUBLISH_URL, payload=_OK)
            async with Connection(_config()) as conn:
                task = conn.publish_async(_simple_request(), recorder)
                await task

        assert [r.request_id for r in recorder.responses] == ["r-1"]
        assert recorder.failures == []

    async def test_callback_receives_auth_failure(self):
        recorder = _Recorder()
        with aioresponses() as m:
            m.post(_TOKEN_URL, payload={"status": 1, "msg": "bad signature"})
            async with Connection(_config()) as conn:
                conn.publish_async(_simple_request(), recorder)

        assert recorder.responses == []
        assert len(recorder.failures) == 1
        assert isinstance(recorder.failures[0], AuthError)


# ---------------------------------------------------------------------------
# Delete
# ---------------------------------------------------------------------------


class TestDeleteFile:
    async def test_delete(self):
        with aioresponses() as m:
            m.post(_TOKEN_URL, payload=_TOKEN_RESPONSE)
            m.post(_FILES_URL, payload=_OK)
            async with Connection(_config()) as conn:
                response = await conn.delete_file(
                    DeviceRef(product_key="pk", device_key="dk"), "enos-connect://abc.txt"
                )

        assert response.is_success
        [(url, call)] = _calls(m, "POST", BROKER)
        assert url.query["action"] == "delete"
        assert url.query["orgId"] == "org1"
        assert url.query["fileUri"] == "enos-connect://abc.txt"
        assert url.query["productKey"] == "pk"
        assert url.query["deviceKey"] == "dk"
        assert call.kwargs["headers"] == {ACCESS_TOKEN_HEADER: "tok"}

    async def test_delete_failure_code(self):
        with aioresponses() as m:
            m.post(_TOKEN_URL, payload=_TOKEN_RESPONSE)
            m.post(_FILES_URL, payload={"code": 404, "msg": "not found"})
            async with Connection(_config()) as conn:
                response = await conn.delete_file(A1, "enos-connect://abc.txt")

        assert response.code == 404

    async def test_delete_async(self):
        recorder = _Recorder()
        with aioresponses() as m:
            m.post(_TOKEN_URL, payload=_TOKEN_RESPONSE)
            m.post(_FILES_URL, payload=_OK)
            async with Connection(_config()) as conn:
                conn.delete_file_async(A1, "enos-connect://abc.txt", recorder)

        assert len(recorder.responses) == 1
        assert recorder.failures == []

    async def test_delete_without_identity(self):
        with aioresponses() as m:
            async with Connection(_config()) as conn:
                with pytest.raises(EncodingError):
                    await conn.delete_file(DeviceRef(), "enos-connect://abc.txt")

        assert m.requests == {}
