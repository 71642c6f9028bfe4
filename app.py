from __future__ import annotations
from typing import Any, Dict, Optional
from flask import Flask, jsonify, request
import logging

from concepts import ListCreation, Requesting, RequestTimeout, Session, TaskBank
from config import ServerConfig
from engine import ActionNotFound, BurstError, Engine
from store import DocumentStore
from sync import make_syncs

logger = logging.getLogger(__name__)

# ====== Build & Run ======

def build_engine(cfg: Optional[ServerConfig] = None, db: Optional[DocumentStore] = None) -> Engine:
    cfg = cfg or ServerConfig()
    db = db or DocumentStore()
    eng = Engine.from_config(cfg)
    eng.register_concept(Requesting("Requesting", timeout=cfg.request_timeout))
    eng.register_concept(ListCreation("ListCreation", db))
    eng.register_concept(TaskBank("TaskBank", db))
    eng.register_concept(Session("Session", db))
    eng.load_syncs(make_syncs())
    return eng


def make_app(eng: Engine, cfg: Optional[ServerConfig] = None) -> Flask:
    cfg = cfg or ServerConfig()
    app = Flask(__name__)
    base = cfg.base_url.rstrip("/")
    passthrough = set(cfg.passthrough)

    def _body() -> Optional[Dict[str, Any]]:
        body = request.get_json(silent=True)
        if body is None:
            return {}
        return body if isinstance(body, dict) else None

    def _passthrough(route: str, body: Dict[str, Any]):
        concept, _, action = route.partition("/")
        try:
            spec = eng.registry.resolve(concept, action)
        except ActionNotFound as exc:
            return jsonify({"error": str(exc)}), 404
        try:
            return jsonify(spec(**body))
        except TypeError as exc:
            return jsonify({"error": str(exc)}), 400

    def _forget_requests(requesting: Requesting, flow: str) -> None:
        # a failed burst's requests, including ones opened by syncs, are never awaited
        try:
            records = eng.records(flow)
        except KeyError:
            return
        for r in records:
            if r.ref == "Requesting.request" and "request" in r.output:
                requesting.forget(r.output["request"])

    def _request(route: str, body: Dict[str, Any]):
        # Requesting.request -> syncs run the burst -> Requesting.respond fills the payload
        requesting = eng.registry.instance("Requesting")
        try:
            rec = eng.invoke("Requesting", "request", {**body, "path": "/" + route})
        except BurstError as exc:
            _forget_requests(requesting, exc.flow)
            return jsonify({"error": str(exc)}), 500
        rid = rec.output["request"]
        try:
            out = requesting.wait(rid, timeout=cfg.request_timeout)
        except RequestTimeout as exc:
            return jsonify({"error": str(exc)}), 504
        return jsonify(out.get("response", out))

    @app.get("/")
    def index():
        return "Concept Server is running."

    @app.post(f"{base}/<path:route>")
    def concept_route(route: str):
        body = _body()
        if body is None:
            return jsonify({"error": "Request body must be a JSON object."}), 400
        if f"{base}/{route}" in passthrough:
            return _passthrough(route, body)
        return _request(route, body)

    return app
