"""API routes for the driver directory."""
from fastapi import APIRouter, Depends, HTTPException

from farmout.core.auth import OperatorContext, get_operator_context, require_roles
from farmout.models.dispatch import Driver
from farmout.services.engine import FarmoutEngine, get_engine

router = APIRouter(prefix="/drivers", tags=["drivers"])


@router.get("")
async def list_drivers(
    context: OperatorContext = Depends(get_operator_context),
    engine: FarmoutEngine = Depends(get_engine),
):
    return {"drivers": engine.drivers.list_drivers()}


@router.post("", response_model=Driver)
async def upsert_driver(
    driver: Driver,
    context: OperatorContext = Depends(require_roles("dispatcher", "admin")),
    engine: FarmoutEngine = Depends(get_engine),
):
    return engine.drivers.upsert(driver)


@router.get("/{driver_id}", response_model=Driver)
async def get_driver(
    driver_id: str,
    context: OperatorContext = Depends(get_operator_context),
    engine: FarmoutEngine = Depends(get_engine),
):
    driver = engine.drivers.get_driver_by_id(driver_id)
    if driver is None:
        raise HTTPException(status_code=404, detail="Driver not found")
    return driver


@router.delete("/{driver_id}")
async def delete_driver(
    driver_id: str,
    context: OperatorContext = Depends(require_roles("dispatcher", "admin")),
    engine: FarmoutEngine = Depends(get_engine),
):
    if not engine.drivers.remove(driver_id):
        raise HTTPException(status_code=404, detail="Driver not found")
    return {"deleted": driver_id}
