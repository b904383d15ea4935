"""
Collection Engine - FastAPI Application

Main entry point for the collection engine backend.

Architecture:
- WorkflowStep templates -> CaseStep occurrences per credit case
- StepScheduler selects due steps -> CaseStepEngine performs them
- CaseActionSet runs the step's actions -> CaseLedger applies case updates
"""
import logging
import os
from contextlib import asynccontextmanager
from fastapi import FastAPI

from .routers import scheduler_router
from .database import init_db


LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database on startup."""
    init_db()
    yield

# Create FastAPI app
app = FastAPI(
    lifespan=lifespan,
    title="Collection Engine",
    description="""
    Collection Engine - Debt-Collection Step Scheduling

    Schedules and performs the steps of the collection workflow for each
    credit case.

    ## Workflow
    1. **Templates**: six workflow steps, from reminder to bailiff handover
    2. **Case steps**: scheduled on business days (Dutch holidays skipped)
    3. **Actions**: email, fee, letter and transfer actions per step
    4. **Successors**: scheduled when a step is performed; its price is billed

    ## Key Principles
    - performed is terminal; a step is never performed twice
    - A step of a paused or closed case defers itself one day at a time
    - Billing totals are incremented atomically in the database
    """,
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

# Include routers
app.include_router(scheduler_router)


@app.get("/")
async def root():
    """Root endpoint - API information."""
    return {
        "name": "Collection Engine",
        "version": "1.0.0",
        "description": "Debt-Collection Step Scheduling",
        "docs": "/docs",
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": "1.0.0"}


# For running with: python -m app.main
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
