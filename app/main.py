import logging
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.api.auth import router as auth_router
from app.api.chat import router as chat_router
from app.api.chat_history import router as chat_history_router
from app.core.errors import ChatRequestError
from app.core.guard import REQUEST_ID_HEADER, request_id_for
from app.db.session import create_tables

logger = logging.getLogger("uvicorn.error")

app = FastAPI(title="Health Coach Chat")


def error_envelope(request: Request, status_code: int, message: str, headers: dict[str, str]) -> JSONResponse:
    request_id = request_id_for(request)
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "error": message,
            "requestId": request_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
        headers={**headers, REQUEST_ID_HEADER: request_id},
    )


@app.exception_handler(ChatRequestError)
async def chat_request_error_handler(request: Request, exc: ChatRequestError) -> JSONResponse:
    return error_envelope(request, exc.status_code, exc.message, exc.headers)


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("chat_request_failed path=%s request_id=%s", request.url.path, request_id_for(request))
    return error_envelope(request, 500, "Internal server error", {})


@app.on_event("startup")
def on_startup() -> None:
    create_tables()


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


app.include_router(auth_router)
app.include_router(chat_router)
app.include_router(chat_history_router)
