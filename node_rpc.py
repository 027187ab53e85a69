# -*- coding: utf-8 -*-
from __future__ import annotations

import base64
import json
import logging
import time
import urllib.request
from typing import Any, Dict, List, Optional
from urllib.error import HTTPError

log = logging.getLogger(__name__)


class RpcError(RuntimeError):
    def __init__(self, code: Optional[int], message: str, raw: Any = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.raw = raw


class NodeRPC:
    """Minimal JSON-RPC 1.0 client for the coin daemon."""

    def __init__(self, host: str, port: int, user: str = "", password: str = "", timeout: float = 12.0):
        self.url = f"http://{host}:{int(port)}/"
        self.user = user
        self.password = password
        self.timeout = float(timeout)

    def call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        if params is None:
            params = []
        payload = json.dumps({"jsonrpc": "1.0", "id": "explorer", "method": method, "params": params}).encode("utf-8")
        auth = base64.b64encode(f"{self.user}:{self.password}".encode("utf-8")).decode("ascii")
        req = urllib.request.Request(
            self.url,
            data=payload,
            headers={"Content-Type": "application/json", "Authorization": f"Basic {auth}"},
            method="POST",
        )

        data: Dict[str, Any] = {}
        for attempt in range(2):
            try:
                try:
                    with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                        data = json.loads(resp.read().decode("utf-8"))
                except HTTPError as e:
                    # Daemon answers application errors with HTTP 500 and a JSON body.
                    raw = e.read() or b""
                    try:
                        data = json.loads(raw.decode("utf-8", errors="replace"))
                    except ValueError:
                        snippet = raw.decode("utf-8", errors="replace").strip()[:200]
                        msg = f"HTTP {getattr(e, 'code', '')} {getattr(e, 'reason', '')}".strip()
                        if snippet:
                            msg = f"{msg}: {snippet}"
                        raise RpcError(getattr(e, "code", None), msg, raw=snippet or None)
                break
            except RpcError:
                raise
            except OSError as e:
                if attempt == 0:
                    log.debug("[RPC] %s failed (%s), retrying", method, e)
                    time.sleep(0.4)
                    continue
                raise

        if data.get("error"):
            err = data["error"]
            code = None
            msg = ""
            if isinstance(err, dict):
                try:
                    code = int(err["code"]) if err.get("code") is not None else None
                except (TypeError, ValueError):
                    code = None
                msg = str(err.get("message") or "")
            raise RpcError(code, msg or str(err), raw=err)
        return data.get("result")

    # ------------------ typed helpers ------------------

    def get_block_count(self) -> int:
        return int(self.call("getblockcount"))

    def get_block_hash(self, height: int) -> str:
        return str(self.call("getblockhash", [int(height)]))

    def get_block_header(self, block_hash: str) -> Dict[str, Any]:
        return self.call("getblockheader", [block_hash, True]) or {}

    def get_difficulty(self, algo: int = 0) -> float:
        return float(self.call("getdifficulty", [int(algo)]) or 0.0)

    def get_network_hash_ps(self, blocks: int = 0, height: int = -1, algo: int = 0) -> float:
        return float(self.call("getnetworkhashps", [int(blocks), int(height), int(algo)]) or 0.0)
