"""
Game HTTP endpoints.

Routes:
  GET /api/config    — Public game configuration (durations, player count, colors)
  GET /api/sessions  — Number of live sessions on this process
"""
import logging

from fastapi import APIRouter, HTTPException

from config import ConfigurationError, load_game_config
from services.session_manager import session_manager

logger = logging.getLogger(__name__)

router = APIRouter(tags=["game"])


@router.get("/config")
async def get_config():
    try:
        return load_game_config().public()
    except ConfigurationError as exc:
        logger.error("Config endpoint: %s", exc)
        raise HTTPException(status_code=503, detail=str(exc))


@router.get("/sessions")
async def get_sessions():
    return {"active": session_manager.count()}
