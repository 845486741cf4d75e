"""
Reporting endpoints (Admin)
"""

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse

from .deps import LendingSystem, current_actor, get_system
from ..rbac import Actor, Permission, require_permission
from ..reporting import ReportFormat, ReportResult


router = APIRouter()


def _reporting(
    actor: Actor = Depends(current_actor),
    system: LendingSystem = Depends(get_system)
):
    require_permission(actor, Permission.VIEW_REPORTS)
    return system.reporting_engine


def _export(engine, result: ReportResult, format: str = "json"):
    if format == "csv":
        return PlainTextResponse(engine.export_report(result, ReportFormat.CSV), media_type="text/csv")
    return engine.export_report(result, ReportFormat.DICT)


@router.get("/dashboard")
async def dashboard(engine=Depends(_reporting)):
    return _export(engine, engine.dashboard())


@router.get("/monthly-performance")
async def monthly_performance(year: Optional[int] = None, format: str = "json", engine=Depends(_reporting)):
    return _export(engine, engine.monthly_performance(year), format)


@router.get("/product-distribution")
async def product_distribution(format: str = "json", engine=Depends(_reporting)):
    return _export(engine, engine.product_distribution(), format)


@router.get("/profit-loss")
async def profit_loss(engine=Depends(_reporting)):
    return _export(engine, engine.profit_loss())


@router.get("/officer-performance")
async def officer_performance(format: str = "json", engine=Depends(_reporting)):
    return _export(engine, engine.officer_performance(), format)


@router.get("/loan-status")
async def loan_status(format: str = "json", engine=Depends(_reporting)):
    return _export(engine, engine.loan_status_breakdown(), format)


@router.get("/overdue")
async def overdue(format: str = "json", engine=Depends(_reporting)):
    return _export(engine, engine.overdue_report(), format)


@router.get("/date-range")
async def date_range(start_date: date, end_date: date, format: str = "json", engine=Depends(_reporting)):
    return _export(engine, engine.date_range_report(start_date, end_date), format)


@router.get("/export-summary")
async def export_summary(format: str = "json", engine=Depends(_reporting)):
    return _export(engine, engine.export_summary(), format)
