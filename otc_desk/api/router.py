from fastapi import APIRouter

from otc_desk.api.routes import deals, health, messages, rules, spreads

api_router = APIRouter()
api_router.include_router(health.router)
api_router.include_router(rules.router)
api_router.include_router(spreads.router)
api_router.include_router(deals.router)
api_router.include_router(messages.router)
