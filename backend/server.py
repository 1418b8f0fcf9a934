"""
Two-stage approvals and live dashboard
PostgreSQL Backend
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv
from pathlib import Path
import os
import logging

# Load environment variables
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Create the main app
app = FastAPI(
    title="Approvals Dashboard",
    description="Inventory and procurement approvals - PostgreSQL Backend",
    version="1.0.0"
)

# Health check endpoint at root level (for Kubernetes)
@app.get("/health")
async def root_health_check():
    """Health check endpoint for Kubernetes liveness/readiness probes"""
    return {"status": "healthy", "database": "PostgreSQL"}

# ==================== PostgreSQL Routes ====================
from routes.pg_auth_routes import pg_auth_router
from routes.pg_approvals_routes import pg_approvals_router

app.include_router(pg_auth_router)
app.include_router(pg_approvals_router)

# ==================== CORS Configuration ====================
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)

# ==================== Logging Configuration ====================
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# ==================== Startup & Shutdown Events ====================
@app.on_event("startup")
async def startup_db_client():
    """Create tables and install change-feed triggers on startup"""
    logger.info("🚀 Starting approvals backend...")

    from database import init_postgres_db
    await init_postgres_db()

    logger.info("✅ PostgreSQL database initialized successfully")

@app.on_event("shutdown")
async def shutdown_db_client():
    """Close database connections on shutdown"""
    logger.info("🛑 Shutting down...")

    from database import close_postgres_db
    await close_postgres_db()

    logger.info("✅ Database connections closed")
