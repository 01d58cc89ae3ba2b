import hmac
import logging
from typing import Optional

from fastapi import FastAPI, Header, HTTPException
from fastapi.responses import JSONResponse

info_logger = logging.getLogger('info_logger')

STATUS_CODES = {'success': 200, 'skipped': 409, 'failed': 502}


def _check_secret(expected: str, provided: Optional[str]):
    if not provided or not hmac.compare_digest(provided.encode(), expected.encode()):
        info_logger.info("Rejected trigger request with a missing or wrong secret")
        raise HTTPException(status_code=401, detail="Invalid or missing sync secret.")


def create_app(runner, secret: str) -> FastAPI:
    """HTTP surface for an outside scheduler; shares the runner of the timer."""
    app = FastAPI(title="CrossChex Odoo Attendance Sync")

    # plain def: FastAPI runs it in its thread pool, so two requests can race
    # for the runner and the loser gets "skipped"
    @app.post("/sync")
    def trigger_sync(x_sync_secret: Optional[str] = Header(None)):
        _check_secret(secret, x_sync_secret)
        result = runner.run_once('http')
        return JSONResponse(status_code=STATUS_CODES.get(result.status, 502),
                            content={"success": result.success, "status": result.status, "message": result.message})

    @app.get("/status")
    def sync_status(x_sync_secret: Optional[str] = Header(None)):
        _check_secret(secret, x_sync_secret)
        status = runner.store.run_status() if runner.store is not None else {}
        return {"running": runner.running, **status}

    return app
