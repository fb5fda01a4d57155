"""
DriftGuard Compliance Monitor Service (port 8400)
-------------------------------------------------
No internal scheduler: an external trigger calls POST /api/compliance/run
every 5-10 minutes. Drift records, incidents and cooldowns live in memory and
are rebuilt by the next cycle after a restart.
"""

import logging
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from driftguard.services.monitor.cycle import ComplianceEngine
from driftguard.services.shared.database import create_all_tables

logging.basicConfig(level=logging.INFO)
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("driftguard_monitor_starting")
    create_all_tables()
    logger.info("driftguard_monitor_tables_ready")

    app.state.engine = ComplianceEngine()
    logger.info(
        "compliance_engine_ready",
        escalation_enabled=app.state.engine.tracker.get_config().enabled,
        channels=[h.integration.value for h in app.state.engine.dispatcher.get_integration_health() if h.configured],
    )

    yield

    logger.info("driftguard_monitor_stopping")


app = FastAPI(
    title="DriftGuard Compliance Monitor",
    version="0.1.0",
    description="Continuous compliance drift detection, SLA escalation, alerting and auto-response.",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

from driftguard.services.monitor.routes_compliance  import router as compliance_router   # noqa: E402
from driftguard.services.monitor.routes_drifts      import router as drifts_router       # noqa: E402
from driftguard.services.monitor.routes_alerts      import router as alerts_router       # noqa: E402
from driftguard.services.monitor.routes_incidents   import router as incidents_router    # noqa: E402
from driftguard.services.monitor.routes_kill_switch import router as kill_switch_router  # noqa: E402
from driftguard.services.monitor.routes_audit       import router as audit_router        # noqa: E402

app.include_router(compliance_router,  prefix="/api", tags=["Compliance"])
app.include_router(drifts_router,      prefix="/api", tags=["Drifts"])
app.include_router(alerts_router,      prefix="/api", tags=["Alerts"])
app.include_router(incidents_router,   prefix="/api", tags=["Incidents"])
app.include_router(kill_switch_router, prefix="/api", tags=["Kill Switch"])
app.include_router(audit_router,       prefix="/api", tags=["Audit"])


@app.get("/health", tags=["Health"])
def health():
    return {"status": "healthy", "service": "driftguard-monitor", "version": "0.1.0"}
