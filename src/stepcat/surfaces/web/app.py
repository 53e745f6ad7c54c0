from pathlib import Path

from fastapi import FastAPI

from .routes import build_execution_routes


def create_app(db_path: Path) -> FastAPI:
    """Build the status API over an execution database."""
    app = FastAPI(title="stepcat", redirect_slashes=False)
    app.state.db_path = db_path
    app.include_router(build_execution_routes())

    @app.get("/health")
    def health():
        return {"status": "ok"}

    return app


__all__ = ["create_app"]
