import hmac
import logging

from quart import Blueprint, abort, jsonify, request

from tagdex.app.errors import UpstreamError
from tagdex.app.services.container import get_services
from tagdex.app.services.record_presenter import present_tag
from tagdex.settings import settings

logger = logging.getLogger(__name__)

admin_bp = Blueprint("admin", __name__, url_prefix="/admin")


@admin_bp.before_request
async def require_admin_key():
    expected = settings.get("ADMIN.key")
    supplied = request.args.get("key") or ""
    if not expected or not hmac.compare_digest(str(expected), supplied):
        abort(401)


@admin_bp.get("/updatetag")
async def update_tag():
    name = (request.args.get("tag") or "").strip()
    if not name:
        return jsonify({"status": 400, "message": "tag is required"}), 400
    try:
        tag = await get_services().sync_engine.refresh_tag(name)
    except UpstreamError as exc:
        logger.warning("Admin refresh of tag %r failed: %s", name, exc)
        return jsonify({"status": 502, "message": "Upstream request failed"}), 502
    if tag is None:
        return jsonify({"status": 404, "message": f"Tag {name!r} not found upstream"}), 404
    logger.info("Refreshed tag %s (%s) on admin request", tag.name, tag.id)
    return jsonify(present_tag(tag))
