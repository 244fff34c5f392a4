"""
Drive Connect service: Google Drive OAuth (PKCE, state validation, token persistence) for DriveMind.
"""
import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI

from drive_connect.database import init_db
from drive_connect.routes import router as drive_auth_router
from drive_connect.security_headers import install_security_headers


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables on startup."""
    init_db()
    yield


app = FastAPI(title="Drive Connect", version="1.0.0", lifespan=lifespan)
install_security_headers(app)
app.include_router(drive_auth_router, tags=["drive-auth"])


@app.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "ok", "service": "drive_connect"}


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    uvicorn.run(
        "drive_connect.main:app",
        host="127.0.0.1",
        port=int(os.environ.get("PORT", "3001")),
        reload=os.environ.get("APP_ENV", "development") != "production",
    )
