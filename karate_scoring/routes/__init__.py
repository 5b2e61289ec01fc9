"""
karate_scoring/routes/__init__.py
Route registration
"""
from fastapi import APIRouter
from karate_scoring.routes import rounds, kata, kumite

router = APIRouter(prefix="/api")

router.include_router(rounds.router)
router.include_router(kata.router)
router.include_router(kumite.router)
