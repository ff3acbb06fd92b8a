"""API routes for dispatch settings."""
from fastapi import APIRouter, Depends

from farmout.core.auth import OperatorContext, get_operator_context, require_roles
from farmout.core.logging import logger
from farmout.models.settings import DispatchSettings, RecipientEntriesRequest, SettingsUpdateRequest
from farmout.services.engine import FarmoutEngine, get_engine

router = APIRouter(prefix="/farmout/settings", tags=["settings"])


@router.get("", response_model=DispatchSettings)
async def read_settings(
    context: OperatorContext = Depends(get_operator_context),
    engine: FarmoutEngine = Depends(get_engine),
):
    return engine.settings_repo.current()


@router.patch("", response_model=DispatchSettings)
async def update_settings(
    request: SettingsUpdateRequest,
    context: OperatorContext = Depends(require_roles("admin")),
    engine: FarmoutEngine = Depends(get_engine),
):
    saved = engine.settings_repo.update(request)
    logger.info("Dispatch settings updated", actor=context.actor, version=saved.version)
    return saved


@router.put("/recipients", response_model=DispatchSettings)
async def update_recipients(
    request: RecipientEntriesRequest,
    context: OperatorContext = Depends(require_roles("admin")),
    engine: FarmoutEngine = Depends(get_engine),
):
    saved = engine.settings_repo.apply_recipient_entries(request.entries)
    logger.info("Escalation recipients updated", actor=context.actor, recipients=len(saved.recipients))
    return saved
