# -*- coding: utf-8 -*-
from __future__ import annotations

import logging
import os
import time
from typing import Any, Optional

from flask import Flask, jsonify, request
from werkzeug.http import http_date

from chain_state import ChainState
from dual_difficulty import DualDifficultyService
from node_rpc import NodeRPC

log = logging.getLogger(__name__)

# -------------------------------------------------------------------
# GLOBAL CONFIG
# -------------------------------------------------------------------

CHAIN_NAME = "Meowcoin"
TICKER = "MEWC"
API_PREFIX = "/api/v1/"

# Daemon RPC
MEWC_RPC_HOST = os.environ.get("MEWC_RPC_HOST", "127.0.0.1")
MEWC_RPC_PORT = int(os.environ.get("MEWC_RPC_PORT", "9766"))
MEWC_RPC_USER = os.environ.get("MEWC_RPC_USER", "meowcoin")
MEWC_RPC_PASS = os.environ.get("MEWC_RPC_PASS", "")
RPC_TIMEOUT_SEC = float(os.environ.get("RPC_TIMEOUT_SEC", "12"))

# Protocol (one canonical target: per-algorithm spacing is derived from it)
TARGET_BLOCK_TIME = int(os.environ.get("TARGET_BLOCK_TIME", "60"))
EPOCH_BLOCK_LENGTH = int(os.environ.get("EPOCH_BLOCK_LENGTH", "2016"))

# Caching / polling
METRICS_CACHE_TTL_SEC = float(os.environ.get("METRICS_CACHE_TTL_SEC", "30"))
RETARGET_CACHE_TTL_SEC = float(os.environ.get("RETARGET_CACHE_TTL_SEC", "30"))
DUAL_STATS_EXPIRES_SEC = 60
BLOCK_WINDOW = int(os.environ.get("BLOCK_WINDOW", "60"))  # last N blocks kept in memory
POLL_INTERVAL_SEC = float(os.environ.get("POLL_INTERVAL_SEC", "5"))

# Optional shared secret for the daemon's -blocknotify hook
INTERNAL_NOTIFY_KEY = os.environ.get("INTERNAL_NOTIFY_KEY", "")

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
HOST = os.environ.get("HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", "5000"))


def _public(resp: Any, expires_sec: int) -> Any:
    resp.headers["Pragma"] = "public"
    resp.headers["Cache-Control"] = "public"
    resp.headers["Expires"] = http_date(time.time() + expires_sec)
    return resp


def _server_error(e: Exception):
    log.warning("[API] %s failed: %s", request.path, e)
    return str(e), 500


# -------------------------------------------------------------------
# FLASK API
# -------------------------------------------------------------------

def create_app(
    service: DualDifficultyService,
    chain: Optional[ChainState] = None,
    notify_key: str = INTERNAL_NOTIFY_KEY,
) -> Flask:
    app = Flask(__name__)

    @app.route(API_PREFIX + "mining/dual-difficulty-metrics")
    def dual_difficulty_metrics():
        try:
            snapshot = service.metrics()
            return _public(jsonify(snapshot.to_dict()), int(service.metrics_cache.ttl_ms / 1000))
        except Exception as e:
            return _server_error(e)

    @app.route(API_PREFIX + "mining/dual-difficulty-adjustment")
    def dual_difficulty_adjustment():
        try:
            snapshot = service.retarget()
            return _public(jsonify(snapshot.to_dict()), int(service.retarget_cache.ttl_ms / 1000))
        except Exception as e:
            return _server_error(e)

    @app.route(API_PREFIX + "mining/dual-pow-stats")
    def dual_pow_stats():
        try:
            return _public(jsonify(service.dual_pow_stats()), DUAL_STATS_EXPIRES_SEC)
        except Exception as e:
            return _server_error(e)

    @app.route(API_PREFIX + "halving")
    def halving():
        try:
            return _public(jsonify(service.halving()), TARGET_BLOCK_TIME)
        except Exception as e:
            return _server_error(e)

    # Wired to the daemon's -blocknotify; protected by firewall and optional shared secret
    @app.route("/internal/block_notify", methods=["POST"])
    def block_notify():
        key = request.headers.get("X-Internal-Key", "")
        if notify_key and key != notify_key:
            return jsonify({"ok": False, "reason": "forbidden"}), 403

        synced = False
        if chain is not None:
            try:
                synced = chain.sync()
            except Exception as e:
                log.warning("[SYNC] notify-triggered sync failed: %s", e)
        service.invalidate()
        return jsonify({"ok": True, "invalidated": True, "synced": synced})

    @app.route("/healthz")
    def healthz():
        """Lightweight health check for uptime monitors and load balancers."""
        height = service.chain.get_current_block_height()
        return jsonify({"ok": True, "chain": CHAIN_NAME, "height": height, "ts": int(time.time())})

    @app.route("/")
    def index():
        return jsonify(
            {
                "ok": True,
                "message": f"{CHAIN_NAME} dual-PoW explorer backend online",
                "ticker": TICKER,
                "height": service.chain.get_current_block_height(),
                "endpoints": sorted(
                    str(rule) for rule in app.url_map.iter_rules() if not str(rule).startswith("/static")
                ),
            }
        )

    return app


def main() -> None:
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    rpc = NodeRPC(MEWC_RPC_HOST, MEWC_RPC_PORT, MEWC_RPC_USER, MEWC_RPC_PASS, timeout=RPC_TIMEOUT_SEC)
    chain = ChainState(rpc, window=BLOCK_WINDOW, epoch_length=EPOCH_BLOCK_LENGTH, poll_interval=POLL_INTERVAL_SEC)
    service = DualDifficultyService(
        chain,
        hashrate=rpc,
        metrics_ttl=METRICS_CACHE_TTL_SEC,
        retarget_ttl=RETARGET_CACHE_TTL_SEC,
        epoch_length=EPOCH_BLOCK_LENGTH,
        target_block_time=TARGET_BLOCK_TIME,
    )
    chain.on_new_block(lambda _height: service.invalidate())
    chain.start()

    app = create_app(service, chain)
    log.info("Starting %s dual-PoW explorer backend...", CHAIN_NAME)
    log.info("RPC: %s:%d | target=%ds | epoch=%d blocks", MEWC_RPC_HOST, MEWC_RPC_PORT, TARGET_BLOCK_TIME, EPOCH_BLOCK_LENGTH)
    app.run(host=HOST, port=PORT, debug=False)


# -------------------------------------------------------------------

if __name__ == "__main__":
    main()
