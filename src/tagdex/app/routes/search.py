import logging
from typing import Any

from quart import Blueprint, jsonify, request

from tagdex.app.errors import TagdexError
from tagdex.app.services.container import get_services
from tagdex.app.services.search_service import SearchRequest
from tagdex.app.services.taxonomy_service import DEFAULT_INCLUDE

logger = logging.getLogger(__name__)

search_bp = Blueprint("search", __name__)


def _error(status: int, message: str):
    return jsonify({"status": status, "message": message}), status


def _split(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [part for part in raw.replace(",", " ").split() if part]


async def _merged_params() -> dict[str, Any]:
    params: dict[str, Any] = dict(request.args.items())
    if request.method == "POST":
        body = await request.get_json(silent=True)
        if isinstance(body, dict):
            params.update(body)
    return params


@search_bp.errorhandler(TagdexError)
async def handle_tagdex_error(exc: TagdexError):
    status = int(getattr(exc, "status", 500))
    if status >= 500:
        logger.exception("Search request failed")
        return _error(status, "An unexpected error occurred.")
    return _error(status, str(exc))


@search_bp.route("/", methods=["GET", "POST"])
async def search():
    params = await _merged_params()
    search_request = SearchRequest.from_params(params)
    logger.debug("Search query=%r limit=%r", search_request.query, search_request.limit)
    page = await get_services().search_service.search(search_request)
    return jsonify(page.as_dict())


@search_bp.get("/tags")
async def tags():
    names = _split(request.args.get("names"))
    if not names:
        return _error(400, "names is required")
    return jsonify(await get_services().taxonomy_service.lookup(names))


@search_bp.get("/tagrelationships")
async def tag_relationships():
    names = _split(request.args.get("tags"))
    if not names:
        return _error(400, "tags is required")
    include = _split(request.args.get("include")) or list(DEFAULT_INCLUDE)
    relationships = await get_services().taxonomy_service.relationships(names, include)
    return jsonify(relationships)


@search_bp.get("/checksource")
async def check_source():
    raw_id = request.args.get("id", "")
    try:
        record_id = int(raw_id)
    except ValueError:
        return _error(400, "id must be an integer")
    results = await get_services().provenance.check(record_id)
    if results is None:
        return _error(404, f"Record {record_id} not found")
    return jsonify(results)
