from fastapi import FastAPI
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
from datetime import timedelta
import logging

import config
from audit_service import AuditService
from permissions import PermissionService
from finance_routes import finance_router
from finance_core.idempotency import IdempotencyGuard, MongoIdempotencyStore
from finance_core.payment_service import PaymentApplicationService
from finance_core.persistence import MongoFinancePersistence
from finance_core.quote_workflow import QuoteWorkflowService

# Configure logging
logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# MongoDB connection
client = AsyncIOMotorClient(config.MONGO_URL)
db = client[config.DB_NAME]

# Initialize services
persistence = MongoFinancePersistence(client, db)
audit_service = AuditService(db)
permission_service = PermissionService(db)

# Create the main app
app = FastAPI(
    title="Financial Calculation & Guarded Workflow Engine",
    version="1.0.0",
    description="Quote totals, guarded quote workflow, idempotent writes and payment application"
)

app.state.quote_service = QuoteWorkflowService(
    persistence,
    permission_service,
    audit=audit_service,
    default_currency=config.DEFAULT_CURRENCY,
    default_tax_rate=config.DEFAULT_TAX_RATE
)
app.state.payment_service = PaymentApplicationService(
    persistence,
    audit=audit_service,
    allow_overpayment=config.ALLOW_OVERPAYMENT
)
app.state.idempotency_guard = IdempotencyGuard(
    MongoIdempotencyStore(db),
    ttl=timedelta(hours=config.IDEMPOTENCY_TTL_HOURS),
    lease=timedelta(seconds=config.IDEMPOTENCY_LEASE_SECONDS)
)

app.include_router(finance_router)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=config.CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("shutdown")
async def shutdown_db_client():
    client.close()
