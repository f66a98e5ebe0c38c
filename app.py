import os
import re
import json
import asyncio
import logging
from dataclasses import replace
from pathlib import Path
from typing import Optional, Dict, Any
import asyncpg
import boto3
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from starlette.concurrency import run_in_threadpool

import card_images
import welcome_card
from welcome_card import CardDefaults

# ----------------------------
# Config / Env
# ----------------------------
S3_ACCESS_KEY = os.getenv("STACKHERO_S3_ACCESS_KEY")
S3_SECRET_KEY = os.getenv("STACKHERO_S3_SECRET_KEY")
S3_BUCKET     = os.getenv("STACKHERO_S3_BUCKET")
S3_ENDPOINT   = os.getenv("STACKHERO_S3_ENDPOINT")

# Settings store is optional: without it every card renders from query params + constants
DATABASE_URL = os.getenv("DATABASE_URL")

CARD_ASSET_ROOT         = Path(os.getenv("CARD_ASSET_ROOT", "public"))
CARD_FETCH_TIMEOUT      = float(os.getenv("CARD_FETCH_TIMEOUT", "4.5"))
CARD_MAX_IMAGE_BYTES    = int(os.getenv("CARD_MAX_IMAGE_BYTES", str(8 * 1024 * 1024)))
SETTINGS_LOOKUP_TIMEOUT = float(os.getenv("SETTINGS_LOOKUP_TIMEOUT", "2.0"))

CORS_ORIGINS = [
    o.strip() for o in os.getenv(
        "CORS_ORIGINS", "https://worldofcommunities.com,https://www.worldofcommunities.com"
    ).split(",") if o.strip()
]

log = logging.getLogger("uvicorn.error")

# S3 client is optional—only if creds/endpoint provided
_s3_client = None
if S3_ACCESS_KEY and S3_SECRET_KEY and S3_BUCKET and S3_ENDPOINT:
    _s3_client = boto3.client(
        "s3",
        aws_access_key_id=S3_ACCESS_KEY,
        aws_secret_access_key=S3_SECRET_KEY,
        endpoint_url=f"https://{S3_ENDPOINT}",
        region_name="us-east-1",
    )

def presign_stackhero(key: str, expires_in: int = 86400) -> Optional[str]:
    """Return a temporary public URL to a private Stackhero S3 object."""
    if not _s3_client:
        return None
    try:
        return _s3_client.generate_presigned_url(
            "get_object",
            Params={"Bucket": S3_BUCKET, "Key": key},
            ExpiresIn=expires_in,
        )
    except Exception as e:
        log.warning("presign failed for key %s: %s", key, e)
        return None

def _presign_background(raw: Optional[str]) -> Optional[str]:
    """
    Stored card backgrounds uploaded through the dashboard are bare S3 keys.
    Local asset paths ('/...') and full URLs are returned unchanged.
    """
    if not raw or raw.startswith("/") or "://" in raw:
        return raw
    return presign_stackhero(raw) or raw


# ----------------------------
# FastAPI app
# ----------------------------
app = FastAPI()
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET"],
    allow_headers=["*"],
)

_pool: Optional[asyncpg.Pool] = None

@app.on_event("startup")
async def _startup():
    global _pool
    if not DATABASE_URL:
        log.warning("DATABASE_URL missing; guild card defaults disabled")
        return

    safe_url = DATABASE_URL.split("@")[-1]
    log.info("DB: creating pool to %s", safe_url)
    try:
        _pool = await asyncpg.create_pool(DATABASE_URL, min_size=1, max_size=5)
        async with _pool.acquire() as conn:
            await conn.execute("""
            CREATE TABLE IF NOT EXISTS guild_settings (
                guild_id    TEXT PRIMARY KEY,
                welcome     JSONB NOT NULL DEFAULT '{}'::jsonb,
                updated_at  TIMESTAMPTZ NOT NULL DEFAULT NOW()
            );
            """)
    except (OSError, asyncio.TimeoutError, asyncpg.PostgresError) as e:
        log.warning("DB unavailable, cards will use query params only: %s", e)
        _pool = None

@app.on_event("shutdown")
async def _shutdown():
    if _pool:
        await _pool.close()

# ------------------------------
# Settings store (read-only)
# ------------------------------
SNOWFLAKE = re.compile(r"^\d{17,20}$")

async def _db_fetchval(sql: str, *params):
    async with _pool.acquire() as conn:
        return await conn.fetchval(sql, *params)

async def _card_defaults(guild_id: str) -> Optional[CardDefaults]:
    """Stored `welcome.card` document for a guild, or None."""
    if not _pool or not SNOWFLAKE.match(guild_id):
        return None
    raw = await _db_fetchval(
        "SELECT welcome->'card' FROM guild_settings WHERE guild_id=$1", guild_id
    )
    if raw is None:
        return None
    # asyncpg hands JSONB back as text unless a codec is registered
    doc = json.loads(raw) if isinstance(raw, str) else raw
    return CardDefaults.from_mapping(doc)

async def _lookup_defaults(guild_id: str) -> Optional[CardDefaults]:
    """Never raises: a slow or broken settings store just means no stored defaults."""
    try:
        defaults = await asyncio.wait_for(_card_defaults(guild_id), SETTINGS_LOOKUP_TIMEOUT)
    except Exception as e:
        log.warning("card defaults lookup failed for guild %s: %s", guild_id, e)
        return None
    if defaults and defaults.background_url:
        defaults = replace(defaults, background_url=_presign_background(defaults.background_url))
    return defaults

async def _resolve_card(guild_id: str, request: Request) -> welcome_card.CardRequest:
    defaults = await _lookup_defaults(guild_id)
    return welcome_card.resolve_card_request(request.query_params, defaults)

# ------------------------------
# Health
# ------------------------------
@app.get("/api/health")
async def health():
    if not _pool:
        return {"ok": True, "db": False, "settings": None}
    try:
        n = await _db_fetchval("SELECT COUNT(*) FROM guild_settings")
        return {"ok": True, "db": True, "settings": n}
    except Exception as e:
        log.exception("/api/health failed: %s", e)
        return JSONResponse({"ok": False, "error": str(e)}, status_code=500)

# ------------------------------
# Welcome card
# ------------------------------
@app.get("/api/guilds/{guild_id}/welcome-card.png")
async def welcome_card_png(guild_id: str, request: Request):
    try:
        card = await _resolve_card(guild_id, request)
        text = welcome_card.layout_text(card)

        async with card_images.image_client(CARD_FETCH_TIMEOUT) as client:
            background, avatar, icon = await card_images.resolve_card_images(
                client,
                CARD_ASSET_ROOT,
                background=card.background_source,
                avatar=card.avatar_source if card.show_avatar else None,
                server_icon=card.server_icon_source,
                max_bytes=CARD_MAX_IMAGE_BYTES,
                timeout=CARD_FETCH_TIMEOUT,
            )

        svg = welcome_card.build_card_svg(card, text, background, avatar, icon)
        png = await run_in_threadpool(welcome_card.rasterize, svg)
    except Exception as e:
        log.exception("/api/guilds/%s/welcome-card.png failed: %s", guild_id, e)
        return JSONResponse({"ok": False, "error": str(e)}, status_code=500)

    return Response(
        content=png,
        media_type="image/png",
        headers={"Cache-Control": "no-store"},
    )

@app.get("/api/guilds/{guild_id}/welcome-card.json")
async def welcome_card_json(guild_id: str, request: Request):
    """Resolved card parameters and text layout, for the dashboard preview."""
    try:
        card = await _resolve_card(guild_id, request)
        text = welcome_card.layout_text(card)
    except Exception as e:
        log.exception("/api/guilds/%s/welcome-card.json failed: %s", guild_id, e)
        return JSONResponse({"ok": False, "error": str(e)}, status_code=500)

    payload: Dict[str, Any] = {
        "ok": True,
        "guild_id": guild_id,
        "card": card.as_json(),
        "text": {
            "title": text.title,
            "subtitle": text.subtitle,
            "title_size": text.title_size,
            "subtitle_size": text.subtitle_size,
        },
        "canvas": {"width": welcome_card.CANVAS_W, "height": welcome_card.CANVAS_H},
    }
    return JSONResponse(payload, headers={"Cache-Control": "no-store"})
