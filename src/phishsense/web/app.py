"""FastAPI web application for PhishSense."""

from __future__ import annotations

import asyncio
import logging
import os
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from dataclasses import asdict

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from phishsense import __version__
from phishsense.combiner import ScoreCombiner, analysis_to_dict, to_jsonable
from phishsense.config import load_config
from phishsense.models import AnalysisConfig, EmailContent, Sensitivity, Verdict
from phishsense.store import SQLiteSenderStore

logger = logging.getLogger(__name__)

# Analysis is CPU-bound; keep it off the event loop.
_analysis_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="phishsense-web")

_TEXT_FIELDS = ("from", "sender", "subject", "body", "headers", "user_id", "userId")


def _default_combiner() -> ScoreCombiner:
    config = load_config(os.getenv("PHISHSENSE_CONFIG") or None)
    db_path = os.getenv("PHISHSENSE_DB")
    store = SQLiteSenderStore(db_path) if db_path else None
    return ScoreCombiner(config, store=store)


def create_app(combiner: ScoreCombiner | None = None) -> FastAPI:
    """Build the FastAPI app around a combiner.

    Args:
        combiner: Combiner to serve. Built from the environment
            (``PHISHSENSE_CONFIG``, ``PHISHSENSE_DB``) when omitted.

    Returns:
        The configured FastAPI application.
    """
    combiner = combiner or _default_combiner()

    @asynccontextmanager
    async def _lifespan(app: FastAPI):
        """Start ML warm-up in the background; requests before it finishes skip ML."""
        combiner.initialize_async()
        yield
        if combiner.history.remote_sync is not None:
            combiner.history.remote_sync.shutdown(wait=False)

    app = FastAPI(title="PhishSense", version=__version__, lifespan=_lifespan)
    app.state.combiner = combiner

    @app.get("/health")
    async def health() -> JSONResponse:
        return JSONResponse({
            "status": "ok",
            "version": __version__,
            "state": combiner.state.value,
            "ml_ready": combiner.ml_engine.is_ready(),
        })

    @app.post("/api/analyze")
    async def api_analyze(request: Request) -> JSONResponse:
        """Analyze one email and return the full result.

        Accepts JSON body: ``{"from": ..., "subject": ..., "body": ...,
        "headers": ..., "user_id": ..., "enable_ml": false,
        "sensitivity": "balanced", "record": false}``

        Args:
            request: The incoming HTTP request with JSON body.

        Returns:
            JSON AnalysisResult, or a 400 error for unusable input.
        """
        body = await _json_body(request)
        if body is None:
            return JSONResponse({"error": "JSON object body required"}, status_code=400)

        bad_fields = [
            key for key in _TEXT_FIELDS
            if body.get(key) is not None and not isinstance(body[key], str)
        ]
        if bad_fields:
            return JSONResponse(
                {"error": f"Fields must be strings: {', '.join(bad_fields)}"},
                status_code=400,
            )

        content = EmailContent.from_mapping(body)
        if not (content.subject or content.body or content.sender):
            return JSONResponse({"error": "from, subject or body required"}, status_code=400)

        try:
            sensitivity = Sensitivity.parse(
                body.get("sensitivity") or combiner.analysis_config.sensitivity
            )
        except ValueError:
            return JSONResponse(
                {"error": f"Unknown sensitivity: {body.get('sensitivity')}"},
                status_code=400,
            )
        config = AnalysisConfig(
            enable_ml=bool(body.get("enable_ml", combiner.analysis_config.enable_ml)),
            sensitivity=sensitivity,
        )

        loop = asyncio.get_running_loop()

        def run_analysis():
            result = combiner.analyze(content, config)
            if body.get("record"):
                combiner.record_result(content, result)
            return result

        result = await loop.run_in_executor(_analysis_executor, run_analysis)
        return JSONResponse(analysis_to_dict(result))

    @app.post("/api/behavior")
    async def api_behavior(request: Request) -> JSONResponse:
        """Record one interaction: ``{"from", "verdict", "user_id"}``."""
        body = await _json_body(request)
        if body is None:
            return JSONResponse({"error": "JSON object body required"}, status_code=400)
        try:
            verdict = Verdict(str(body.get("verdict", "")).lower())
        except ValueError:
            return JSONResponse(
                {"error": "verdict must be one of safe, suspicious, phishing"},
                status_code=400,
            )

        content = EmailContent.from_mapping(body)
        record = combiner.history.record_interaction(content.sender, verdict, content.user_id)
        if record is None:
            return JSONResponse({"error": "A valid sender address is required"}, status_code=400)
        return JSONResponse(to_jsonable(asdict(record)))

    @app.post("/api/trusted")
    async def api_trusted(request: Request) -> JSONResponse:
        """Confirm a sender as legitimate: ``{"from", "user_id", "subject", "notes"}``."""
        body = await _json_body(request)
        if body is None:
            return JSONResponse({"error": "JSON object body required"}, status_code=400)

        content = EmailContent.from_mapping(body)
        record = combiner.history.record_trusted_sender(
            content.sender,
            content.user_id,
            subject=content.subject or None,
            notes=body.get("notes") or None,
        )
        if record is None:
            return JSONResponse({"error": "A valid sender address is required"}, status_code=400)
        return JSONResponse(to_jsonable(asdict(record)))

    @app.get("/api/trusted")
    async def api_trusted_list(user_id: str | None = None) -> JSONResponse:
        records = sorted(
            combiner.history.trusted_records(user_id),
            key=lambda r: r.last_confirmed_at,
            reverse=True,
        )
        return JSONResponse({"trusted": [to_jsonable(asdict(r)) for r in records]})

    @app.delete("/api/trusted/{record_id}")
    async def api_trusted_delete(record_id: str) -> JSONResponse:
        combiner.history.remove_trusted(record_id)
        return JSONResponse({"removed": record_id})

    return app


async def _json_body(request: Request) -> dict | None:
    try:
        body = await request.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


app = create_app()


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main() -> None:
    """Start the PhishSense web server."""
    host = os.getenv("PHISHSENSE_HOST", "127.0.0.1")
    port = int(os.getenv("PHISHSENSE_PORT", "8000"))
    uvicorn.run("phishsense.web.app:app", host=host, port=port)


if __name__ == "__main__":
    main()
