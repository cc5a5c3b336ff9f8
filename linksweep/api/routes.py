from __future__ import annotations

import json

from flask import current_app, jsonify, request

from linksweep.api import api_bp
from linksweep.extensions import db
from linksweep.models import BookmarkNode, utcnow
from linksweep.services.run_controller import (
    REASON_DECLINED,
    REASON_INVALID,
    REASON_MISSING,
    ControlResult,
    get_controller,
)
from linksweep.services.store import ProtectedNodeError, StoreError
from linksweep.services.tree import node_to_dict

_STATUS_BY_REASON = {
    REASON_DECLINED: 409,
    REASON_INVALID: 400,
    REASON_MISSING: 404,
}


def _control_response(result: ControlResult, success_status: int = 200):
    if result.success:
        return jsonify(result.as_dict()), success_status
    return jsonify(result.as_dict()), _STATUS_BY_REASON.get(result.reason, 500)


def _parse_backup_upload():
    upload = request.files.get("file")
    if upload is not None:
        try:
            return json.loads(upload.read().decode("utf-8")), None
        except (UnicodeDecodeError, ValueError):
            return None, "Invalid backup file format"

    payload = request.get_json(silent=True)
    if isinstance(payload, dict) and "backup_data" in payload:
        return payload.get("backup_data"), None
    return payload, None


@api_bp.route("/health")
def health():
    return jsonify({"status": "ok", "service": "LinkSweep"})


@api_bp.route("/tree", methods=["GET"])
def tree_get():
    roots = get_controller().store.get_tree()
    return jsonify({"items": [node_to_dict(root) for root in roots]})


@api_bp.route("/nodes", methods=["POST"])
def nodes_create():
    payload = request.get_json(silent=True) or {}
    title = (payload.get("title") or "").strip()
    url = (payload.get("url") or "").strip() or None
    try:
        node = get_controller().store.create(
            parent_id=payload.get("parent_id"), title=title, url=url
        )
    except StoreError as exc:
        return jsonify({"error": str(exc)}), 400
    return jsonify(db.session.get(BookmarkNode, node.id).as_dict()), 201


@api_bp.route("/nodes/<int:node_id>", methods=["DELETE"])
def nodes_delete(node_id: int):
    if db.session.get(BookmarkNode, node_id) is None:
        return jsonify({"error": "node not found"}), 404
    try:
        get_controller().store.remove(node_id)
    except ProtectedNodeError as exc:
        return jsonify({"error": str(exc)}), 403
    except StoreError as exc:
        return jsonify({"error": str(exc)}), 400
    return jsonify({"status": "deleted"})


@api_bp.route("/nodes/<int:node_id>/check", methods=["POST"])
def nodes_check(node_id: int):
    node = db.session.get(BookmarkNode, node_id)
    if node is None:
        return jsonify({"error": "node not found"}), 404
    if node.is_folder:
        return jsonify({"error": "folders cannot be checked"}), 400

    result = get_controller().probe.check(node.url)
    return jsonify({"status": "checked", "node": node.as_dict(), "result": result.value})


@api_bp.route("/status", methods=["GET"])
def status_get():
    return jsonify(get_controller().status())


@api_bp.route("/checks/start", methods=["POST"])
def checks_start():
    background = current_app.config.get("CHECK_RUN_IN_BACKGROUND", True)
    return _control_response(
        get_controller().start(background=background), success_status=202
    )


@api_bp.route("/checks/stop", methods=["POST"])
def checks_stop():
    return _control_response(get_controller().stop())


@api_bp.route("/snapshot", methods=["POST"])
def snapshot_capture():
    return _control_response(get_controller().capture(), success_status=201)


@api_bp.route("/snapshot", methods=["GET"])
def snapshot_download():
    data = get_controller().snapshots.export()
    if data is None:
        return jsonify({"error": "No backup available"}), 404

    response = jsonify(data)
    filename = f"bookmark-backup-{utcnow().date().isoformat()}.json"
    response.headers["Content-Disposition"] = f'attachment; filename="{filename}"'
    return response


@api_bp.route("/snapshot/restore", methods=["POST"])
def snapshot_restore():
    return _control_response(get_controller().restore_stored())


@api_bp.route("/snapshot/restore-data", methods=["POST"])
def snapshot_restore_data():
    data, error = _parse_backup_upload()
    if error:
        return jsonify({"success": False, "error": error}), 400
    return _control_response(get_controller().restore_from_data(data))


@api_bp.route("/events", methods=["GET"])
def events_list():
    after = request.args.get("after", default=0, type=int)
    return jsonify({"items": get_controller().events.history(after=after)})
