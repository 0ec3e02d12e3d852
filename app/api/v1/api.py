"""
V1 API router aggregator — wires all endpoint modules together.
"""

from fastapi import APIRouter

from app.api.v1.endpoints import health, reimbursements

api_router = APIRouter()

# Reimbursement requests, transitions, attachments, history
api_router.include_router(reimbursements.router)

# Health, status
api_router.include_router(health.router)
