import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

import config
from auth import run_sweeper
from routes import register_routes
from storage import StorageError, StorageInterface
from storage_factory import select_storage

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(storage: Optional[StorageInterface] = None) -> FastAPI:
    """Build the API. Without an explicit ``storage`` the backend is chosen at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.storage is None:
            app.state.storage = select_storage()
        sweeper = app.state.sweeper = asyncio.create_task(run_sweeper(app.state.sessions))
        logger.info("%s API started (%s)", config.APP_NAME, app.state.storage.name)
        yield
        sweeper.cancel()
        with suppress(asyncio.CancelledError):
            await sweeper

    app = FastAPI(title=config.APP_NAME, lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"message": jsonable_encoder(exc.errors())})

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content={"message": exc.detail},
                            headers=getattr(exc, "headers", None))

    @app.exception_handler(StorageError)
    async def storage_error(request: Request, exc: StorageError):
        return JSONResponse(status_code=503, content={"message": "Storage temporarily unavailable"})

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"message": "Internal Server Error"})

    @app.get("/")
    def read_root():
        return {"message": f"{config.APP_NAME} API is running"}

    @app.get("/test")
    def test_database(request: Request):
        response = {
            "backend": "✅ Running",
            "storage": "❌ Not Selected",
            "database_url": "✅ Set" if config.DATABASE_URL else "❌ Not Set",
            "database_name": "✅ Set" if config.DATABASE_NAME else "❌ Not Set",
            "connection_status": "Not Connected",
            "collections": [],
        }
        current = request.app.state.storage
        if current is None:
            return response
        try:
            details = current.describe()
        except StorageError as e:
            response["storage"] = f"⚠️  {current.name} selected but Error: {str(e)[:50]}"
            return response
        response["storage"] = f"✅ {details['backend']}"
        response["connection_status"] = "Connected"
        response["collections"] = details["collections"]
        return response

    register_routes(app, storage)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
