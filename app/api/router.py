# app/api/router.py
from fastapi import APIRouter
from app.api import (
    routes_prescriptions,
    routes_orders,
    routes_credits,
    routes_notifications,
)

api_router = APIRouter()

api_router.include_router(routes_prescriptions.router)
api_router.include_router(routes_orders.router)
api_router.include_router(routes_credits.router)
api_router.include_router(routes_notifications.router)
