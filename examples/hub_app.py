"""Minimal FastAPI app wiring the streaming hub router and Redis."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from redis import asyncio as aioredis

from streamproxy.config import NegotiationConfig
from streamproxy.hub import router


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.extra["redis"] = aioredis.from_url("redis://localhost:6379/0")
    app.extra["streamproxy_config"] = NegotiationConfig()
    try:
        yield
    finally:
        await app.extra["redis"].aclose()


app = FastAPI(lifespan=lifespan)
app.include_router(router)
