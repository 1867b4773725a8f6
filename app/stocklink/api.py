from fastapi import APIRouter

from app.stocklink.routers.health import router as health_router
from app.stocklink.routers.ops import router as ops_router
from app.stocklink.routers.stock import router as stock_router
from app.stocklink.routers.transfers import router as transfers_router

api_router = APIRouter()
api_router.include_router(health_router)
api_router.include_router(transfers_router, tags=["transfers"])
api_router.include_router(stock_router, tags=["stock"])
api_router.include_router(ops_router, tags=["ops"])
