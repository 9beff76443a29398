from fastapi import FastAPI

from herald.api.v1.router import router as v1_router
from herald.core.logging import configure_logging
from herald.middleware.request_id import RequestIDMiddleware

configure_logging()

app = FastAPI(title="Herald Notifications API")
app.add_middleware(RequestIDMiddleware)
app.include_router(v1_router, prefix="/api/v1")


@app.get("/healthz")
def root_healthz() -> dict[str, str]:
    return {"status": "ok"}
