import logging

from dotenv import load_dotenv
from quart import Quart, jsonify
from werkzeug.exceptions import HTTPException

from tagdex.settings import settings

load_dotenv()


def create_app(services=None, *, start_lifecycle: bool = True):
    from .services.container import AppLifecycle, AppServices

    if services is None:
        services = AppServices.create()
    lifecycle = AppLifecycle(services)

    app = Quart(__name__)
    app.config["JSON_SORT_KEYS"] = False
    app.extensions["tagdex"] = services
    app.extensions["tagdex_lifecycle"] = lifecycle

    logging.basicConfig(
        level=str(settings.get("LOG_LEVEL", "INFO")).upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    from .routes.admin import admin_bp
    from .routes.search import search_bp

    app.register_blueprint(search_bp)
    app.register_blueprint(admin_bp)

    if start_lifecycle:

        @app.before_serving
        async def _start_lifecycle() -> None:
            await lifecycle.start()

        @app.after_serving
        async def _stop_lifecycle() -> None:
            await lifecycle.stop()

    @app.errorhandler(HTTPException)
    async def handle_http_exception(e: HTTPException):
        status = e.code or 500
        message = e.description or e.name
        return jsonify({"status": status, "message": message}), status

    @app.errorhandler(Exception)
    async def handle_exception(e):
        app.logger.exception("Unhandled exception: %s", e)
        message = "An unexpected error occurred. Please try again later."
        return jsonify({"status": 500, "message": message}), 500

    app.logger.info("Application initialized")
    return app
