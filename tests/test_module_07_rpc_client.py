"""
Tests for Module 07 — outbound HTTP clients and configuration.
Ledger JSON-RPC client and IPFS document store over httpx.MockTransport,
plus environment-driven Settings.
"""
import json

import httpx
import pytest

from api.config import DEFAULT_JWT_SECRET, ConfigError, Settings
from api.services import build_services
from common.errors import DocumentStoreError
from documents.store import IpfsDocumentStore
from ledger.client import (
    HttpLedgerClient,
    LedgerRpcError,
    LedgerTransportError,
    RevertReason,
    sign_body,
)
from ledger.local import LocalLedger

RPC_URL = "http://ledger.test/rpc"
SIGNING_KEY = "test-ledger-key"


def _client(handler):
    client = HttpLedgerClient(RPC_URL, SIGNING_KEY, transport=httpx.MockTransport(handler))
    client.connect()
    return client


class TestHttpLedgerClient:
    def test_request_is_signed_json_rpc(self):
        seen = {}

        def handler(request):
            seen["body"] = request.content
            seen["signature"] = request.headers["X-Ledger-Signature"]
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": "0xabc"})

        client = _client(handler)
        assert client.call("owner", {}) == "0xabc"
        payload = json.loads(seen["body"])
        assert payload["method"] == "ledger_owner"
        assert payload["jsonrpc"] == "2.0"
        assert seen["signature"] == sign_body(SIGNING_KEY, seen["body"])

    def test_request_ids_increase(self):
        ids = []

        def handler(request):
            ids.append(json.loads(request.content)["id"])
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": ids[-1], "result": None})

        client = _client(handler)
        client.call("owner", {})
        client.call("owner", {})
        assert ids == [1, 2]

    def test_revert_error(self):
        def handler(request):
            return httpx.Response(200, json={
                "jsonrpc": "2.0", "id": 1,
                "error": {"code": 3, "message": "execution reverted", "data": {"reason": RevertReason.NOT_OWNER}},
            })

        with pytest.raises(LedgerRpcError) as exc:
            _client(handler).call("transferBatch", {}, mutating=True)
        assert exc.value.is_revert
        assert exc.value.reason == RevertReason.NOT_OWNER

    def test_insufficient_funds_error(self):
        def handler(request):
            return httpx.Response(200, json={
                "jsonrpc": "2.0", "id": 1, "error": {"code": -32010, "message": "insufficient funds"},
            })

        with pytest.raises(LedgerRpcError) as exc:
            _client(handler).call("mintBatch", {}, mutating=True)
        assert exc.value.is_insufficient_funds
        assert exc.value.reason is None

    def test_malformed_json(self):
        def handler(request):
            return httpx.Response(200, content=b"<html>gateway</html>")

        with pytest.raises(LedgerTransportError) as exc:
            _client(handler).call("owner", {})
        assert exc.value.timed_out is False

    def test_missing_result(self):
        def handler(request):
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1})

        with pytest.raises(LedgerTransportError):
            _client(handler).call("owner", {})

    def test_http_error(self):
        with pytest.raises(LedgerTransportError):
            _client(lambda request: httpx.Response(502)).call("owner", {})

    def test_timeout_is_flagged(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(LedgerTransportError) as exc:
            _client(handler).call("mintBatch", {}, mutating=True)
        assert exc.value.timed_out is True

    def test_network_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(LedgerTransportError) as exc:
            _client(handler).call("owner", {})
        assert exc.value.timed_out is False

    def test_call_before_connect(self):
        client = HttpLedgerClient(RPC_URL, SIGNING_KEY)
        with pytest.raises(LedgerTransportError):
            client.call("owner", {})

    def test_close_is_idempotent(self):
        client = _client(lambda request: httpx.Response(200, json={"result": 1}))
        client.close()
        client.close()
        with pytest.raises(LedgerTransportError):
            client.call("owner", {})


class TestIpfsDocumentStore:
    def _store(self, handler):
        return IpfsDocumentStore("http://ipfs.test:5001", "https://gw.test/ipfs",
                                 transport=httpx.MockTransport(handler))

    def test_put_returns_cid(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["body"] = request.content
            return httpx.Response(200, json={"Name": "doc.json", "Hash": "bafy123", "Size": "10"})

        store = self._store(handler)
        assert store.put(b"hello", {"filename": "doc.json"}) == "bafy123"
        assert seen["path"] == "/api/v0/add"
        assert b"hello" in seen["body"]

    def test_put_json(self):
        store = self._store(lambda request: httpx.Response(200, json={"Hash": "bafyjson"}))
        assert store.put_json({"batchNumber": "BATCH-2024-001"}, filename="b.json") == "bafyjson"

    def test_url_for(self):
        store = self._store(lambda request: httpx.Response(200))
        assert store.url_for("bafy123") == "https://gw.test/ipfs/bafy123"

    def test_http_error(self):
        store = self._store(lambda request: httpx.Response(500))
        with pytest.raises(DocumentStoreError):
            store.put(b"hello")

    def test_unexpected_response(self):
        store = self._store(lambda request: httpx.Response(200, json={"Name": "x"}))
        with pytest.raises(DocumentStoreError):
            store.put(b"hello")

    def test_network_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        store = self._store(handler)
        with pytest.raises(DocumentStoreError):
            store.put(b"hello")
        assert store.ping() is False

    def test_ping(self):
        store = self._store(lambda request: httpx.Response(200, json={"Version": "0.26.0"}))
        assert store.ping() is True


class TestSettings:
    def test_defaults(self):
        settings = Settings.from_env({})
        assert settings.is_development
        assert settings.uses_local_ledger
        assert settings.allowed_origins == ["http://localhost:3000"]

    def test_env_overrides(self):
        settings = Settings.from_env({
            "APP_ENV": "staging",
            "JWT_SECRET": "a",
            "JWT_REFRESH_SECRET": "b",
            "ACCESS_TOKEN_EXPIRE_MINUTES": "15",
            "ALLOWED_ORIGINS": "https://a.test, https://b.test",
            "REVOCATION_DB_URL": "postgres://u:p@db/pharmachain",
            "LOG_LEVEL": "debug",
        })
        assert settings.access_token_expire_minutes == 15
        assert settings.allowed_origins == ["https://a.test", "https://b.test"]
        assert settings.revocation_db_url == "postgresql://u:p@db/pharmachain"
        assert settings.log_level == "DEBUG"

    def test_equal_secrets_refused(self):
        with pytest.raises(ConfigError):
            Settings.from_env({"JWT_SECRET": "same", "JWT_REFRESH_SECRET": "same"})

    def test_production_requires_secrets(self):
        with pytest.raises(ConfigError):
            Settings.from_env({"APP_ENV": "production", "LEDGER_RPC_URL": "http://node:8545"})

    def test_production_refuses_local_ledger(self):
        with pytest.raises(ConfigError):
            Settings.from_env({"APP_ENV": "production", "JWT_SECRET": "a", "JWT_REFRESH_SECRET": "b"})

    def test_production_with_remote_ledger(self):
        settings = Settings.from_env({
            "APP_ENV": "production",
            "JWT_SECRET": "a",
            "JWT_REFRESH_SECRET": "b",
            "LEDGER_RPC_URL": "http://node:8545",
        })
        assert settings.is_production
        assert settings.jwt_secret != DEFAULT_JWT_SECRET

    def test_non_integer_value(self):
        with pytest.raises(ConfigError):
            Settings.from_env({"GAS_LIMIT": "lots"})


class TestBuildServices:
    def test_local_ledger_wiring(self):
        services = build_services(Settings(jwt_secret="a", jwt_refresh_secret="b"))
        assert services.documents is None
        services.gateway.start()
        assert services.gateway.ready
        services.gateway.close()

    def test_remote_ledger_wiring(self):
        services = build_services(Settings(
            jwt_secret="a", jwt_refresh_secret="b",
            ledger_rpc_url=RPC_URL, ipfs_api_url="http://ipfs.test:5001",
        ))
        assert not isinstance(services.gateway._client, LocalLedger)
        assert isinstance(services.gateway._client, HttpLedgerClient)
        assert services.documents is not None
        services.documents.close()


if __name__ == "__main__":
    import subprocess, sys
    sys.exit(subprocess.call(["pytest", __file__, "-v"]))
