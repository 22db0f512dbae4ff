# api/lineage.py
# WSGI app named `app` serving the lineage builder.
# Endpoints:
#   - POST /api/lineage        -> build lineage graph
#   - GET  /api/lineage        -> health
#
# Payloads supported:
# 1) Full:
#    {
#      "requestId": "optional",
#      "historyEntries": [ {"exact_query":"...", "resources": {"execution_time_ms": 12}}, "SELECT ..." ],
#      "options": { "queryTypeFilter":"ALL", "tableFilter":"orders", "defaultSchema":"public", "viewMode":"FULL" }
#    }
# 2) Convenience:
#    { "sql": "INSERT INTO t SELECT a, b FROM s" }
#
# `?format=mermaid` returns the graph as a Mermaid flowchart instead of JSON.

from __future__ import annotations

import json
from typing import Any, Dict

from flask import Flask, request, Response

from lineage_export import graph_to_mermaid
from lineage_host import handle_request, new_request_id

app = Flask(__name__)


def _json_response(body: Dict[str, Any], status: int = 200) -> Response:
    return _corsify(Response(response=json.dumps(body), status=status, mimetype="application/json"))


def _parse_message(payload: Dict[str, Any]) -> Dict[str, Any]:
    # Convenience mode: { "sql": "..." }
    if "sql" in payload and isinstance(payload["sql"], str):
        return {
            "requestId": payload.get("requestId") or new_request_id(),
            "historyEntries": [payload["sql"]],
            "options": payload.get("options") or {},
        }
    return {
        "requestId": payload.get("requestId") or new_request_id(),
        "historyEntries": payload.get("historyEntries"),
        "options": payload.get("options") or {},
    }


# ---------- CORS ----------

def _corsify(resp: Response) -> Response:
    resp.headers["Access-Control-Allow-Origin"] = "*"
    resp.headers["Access-Control-Allow-Methods"] = "GET,POST,OPTIONS"
    resp.headers["Access-Control-Allow-Headers"] = "Content-Type, Authorization"
    return resp


@app.after_request
def add_cors_headers(resp: Response):
    return _corsify(resp)


@app.route("/", methods=["OPTIONS"])
def options_root():
    return _corsify(Response(status=204))


# ---------- Routes ----------

@app.route("/", methods=["GET"])
def health() -> Response:
    return _json_response({"ok": True})


@app.route("/", methods=["POST"])
def build() -> Response:
    try:
        payload = request.get_json(force=True, silent=False)
    except Exception:
        return _json_response({"error": "Invalid JSON"}, status=400)

    if not isinstance(payload, dict):
        return _json_response({"error": "JSON object expected"}, status=400)

    if "historyEntries" not in payload and not isinstance(payload.get("sql"), str):
        return _json_response({"error": "No history provided (use `historyEntries` or `sql`)"}, status=400)

    reply = handle_request(_parse_message(payload))
    if not reply["ok"]:
        return _json_response(reply, status=500)

    if request.args.get("format") == "mermaid":
        text = graph_to_mermaid(reply["result"])
        return _corsify(Response(response=text, mimetype="text/plain"))

    return _json_response(reply)


@app.route("/api/lineage", methods=["OPTIONS"])
def options_lineage():
    return _corsify(Response(status=204))


@app.route("/api/lineage", methods=["GET"])
def health_alias():
    return health()


@app.route("/api/lineage", methods=["POST"])
def build_alias():
    return build()
