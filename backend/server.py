from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from database import database
from routes import admin_quota
from services.quota_errors import QuotaError

import os
import logging
from pathlib import Path
from dotenv import load_dotenv
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.jobstores.mongodb import MongoDBJobStore

# Load environment variables
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Initialize scheduler with MongoDB job store for persistence
# Jobs will survive server restarts
mongo_url = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
db_name = os.environ.get('DB_NAME', 'exam_platform')

jobstores = {}
try:
    from pymongo import MongoClient
    mongo_client = MongoClient(mongo_url)
    jobstores['default'] = MongoDBJobStore(
        database=db_name,
        collection='scheduled_jobs',
        client=mongo_client
    )
    logger.info(f"MongoDB job store configured: {db_name}.scheduled_jobs")
except Exception as e:
    logger.warning(f"Failed to configure MongoDB job store, using memory store: {e}")
    jobstores = {}

scheduler = AsyncIOScheduler(jobstores=jobstores)

# Import job runners from shared module (used by scheduler and admin run-now)
from job_runner import (
    run_subscription_renewals,
    run_grace_period_expirations,
    run_expiry_reminders,
)

# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting Exam Platform Quota API")
    await database.connect()

    stripe_key = (os.environ.get("STRIPE_SECRET_KEY") or os.environ.get("STRIPE_API_KEY") or "").strip()
    if not stripe_key:
        logger.error("STRIPE_API_KEY is not set. Automatic renewals will move tenants to grace period.")
    else:
        logger.info("STRIPE_MODE = %s (from Stripe key prefix)", "test" if stripe_key.startswith("sk_test_") else "live")

    # Configure scheduled jobs
    # Renewal reminders daily at 9:00 AM UTC
    scheduler.add_job(
        run_expiry_reminders,
        CronTrigger(hour=9, minute=0),
        id="subscription_expiry_reminders",
        name="Subscription Expiry Reminders",
        replace_existing=True
    )

    # Due renewals daily at 10:00 AM UTC (declines open a 3-day grace period)
    scheduler.add_job(
        run_subscription_renewals,
        CronTrigger(hour=10, minute=0),
        id="subscription_renewals",
        name="Subscription Renewals",
        replace_existing=True
    )

    # Grace period sweep daily at 11:00 AM UTC
    scheduler.add_job(
        run_grace_period_expirations,
        CronTrigger(hour=11, minute=0),
        id="grace_period_expirations",
        name="Grace Period Expirations",
        replace_existing=True
    )

    scheduler.start()
    logger.info("Background job scheduler started")

    yield

    # Shutdown
    logger.info("Shutting down Exam Platform Quota API")
    scheduler.shutdown(wait=False)
    logger.info("Background job scheduler stopped")
    await database.close()

# Create FastAPI app
app = FastAPI(
    title="Exam Platform Quota API",
    description="Subscription plans, usage limits and quota migration",
    version="1.0.0",
    lifespan=lifespan
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(admin_quota.router)

# Root endpoint
@app.get("/api")
async def root():
    return {
        "service": "Exam Platform Quota API",
        "version": "1.0.0",
        "status": "operational"
    }

# Health check
@app.get("/api/health")
async def health_check():
    return {
        "status": "healthy",
        "environment": os.getenv("ENVIRONMENT", "development")
    }


# Quota errors raised outside the admin routes (limit gate callers)
@app.exception_handler(QuotaError)
async def quota_exception_handler(request: Request, exc: QuotaError):
    http_error = admin_quota.quota_http_error(exc)
    return JSONResponse(status_code=http_error.status_code, content={"detail": http_error.detail})


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server:app",
        host="0.0.0.0",
        port=8001,
        reload=os.getenv("ENVIRONMENT") == "development"
    )
