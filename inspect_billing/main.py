"""FastAPI application for the credit ledger and subscription reconciliation engine."""
from __future__ import annotations

import logging
import os

import psycopg2
from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from inspect_billing import app_context
from inspect_billing.app.routes.billing import router as billing_router
from inspect_billing.app.routes.credits import router as credits_router
from inspect_billing.app.routes.pricing import router as pricing_router
from inspect_billing.config import load_database_config
from inspect_billing.middleware_perf import RequestTimingMiddleware


load_dotenv()

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())

DB_CFG = load_database_config()


def get_conn():
    return psycopg2.connect(**DB_CFG)


app_context.configure(get_conn=get_conn)

app = FastAPI(title="Inspection Billing API")

app.add_middleware(RequestTimingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin for origin in os.getenv("CORS_ORIGINS", "http://localhost:5173").split(",") if origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(billing_router)
app.include_router(credits_router)
app.include_router(pricing_router)


@app.get("/health")
def health() -> dict:
    return {"status": "ok", "database": app_context.is_configured()}
