#!/usr/bin/env python
"""
FastAPI server for Truck Command
Back office API for the trucking dashboard
"""
import logging

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from truck_command import __version__
from truck_command.config import config
from truck_command.logging_config import setup_logging, RequestIDMiddleware
from truck_command.exceptions import (
    http_exception_handler,
    validation_exception_handler,
    general_exception_handler,
)
from truck_command.db.engine import test_connection
from truck_command.auth_routes import router as auth_router
from truck_command.billing_routes import router as billing_router
from truck_command.eld_routes import router as eld_router
from truck_command.quickbooks_routes import router as quickbooks_router
from truck_command.invoice_routes import router as invoice_router
from truck_command.load_routes import router as load_router
from truck_command.fleet_routes import router as fleet_router
from truck_command.compliance_routes import router as compliance_router
from truck_command.expense_routes import router as expense_router
from truck_command.customer_routes import router as customer_router
from truck_command.ifta_routes import router as ifta_router
from truck_command.notification_routes import router as notification_router
from truck_command.cron_routes import router as cron_router

setup_logging(env=config.ENV, log_level=config.LOG_LEVEL)
logger = logging.getLogger(__name__)

app = FastAPI(title="Truck Command API", version=__version__)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestIDMiddleware)

app.add_exception_handler(StarletteHTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, general_exception_handler)

app.include_router(auth_router)
app.include_router(billing_router)
app.include_router(eld_router)
app.include_router(quickbooks_router)
app.include_router(invoice_router)
app.include_router(load_router)
app.include_router(fleet_router)
app.include_router(compliance_router)
app.include_router(expense_router)
app.include_router(customer_router)
app.include_router(ifta_router)
app.include_router(notification_router)
app.include_router(cron_router)

logger.info(f"Truck Command API {__version__} starting (env={config.ENV}, build={config.BUILD_COMMIT})")


@app.get("/")
async def root():
    return {"message": "Truck Command API", "status": "running"}


@app.get("/health")
async def health():
    """Health check endpoint for the load balancer and monitoring"""
    if not test_connection():
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "service": "truck-command", "database": "unavailable"},
        )
    return {
        "status": "healthy",
        "service": "truck-command",
        "database": "connected",
        "version": config.BUILD_VERSION,
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("api_server:app", host="0.0.0.0", port=config.PORT, reload=config.is_dev)
