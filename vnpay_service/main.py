import logging

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .routers import payments
from .db import init_db
from .config import get_settings

settings = get_settings()

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(title="VNPay Payments Service")

# CORS - the storefront calls /create and /verify from the browser
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # change to your frontend domains in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(payments.router)


@app.on_event("startup")
async def on_startup():
    # init db tables if not using migrations
    await init_db()


@app.get("/health")
def health():
    return {"status": "ok", "env": settings.env}


if __name__ == "__main__":
    uvicorn.run("vnpay_service.main:app", host=settings.app_host, port=settings.app_port, reload=(settings.env != "production"))
