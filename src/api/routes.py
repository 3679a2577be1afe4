"""FastAPI routes managing per-number call configurations."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Response, status

from api.dependencies import get_repository
from api.schemas import CallConfigurationCreate, CallConfigurationResponse, CallConfigurationUpdate
from db.repository import CallConfigurationRepository
from pipeline.errors import PipelineError

LOGGER = logging.getLogger(__name__)

router = APIRouter(prefix="/configurations", tags=["configurations"])


def _http_error(exc: PipelineError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.detail)


@router.get("", response_model=list[CallConfigurationResponse])
async def list_configurations(
    repo: CallConfigurationRepository = Depends(get_repository),
) -> list[CallConfigurationResponse]:
    configs = await repo.list_configurations()
    return [CallConfigurationResponse.model_validate(config) for config in configs]


@router.get("/by-phone/{phone_number}", response_model=CallConfigurationResponse)
async def get_configuration_by_phone(
    phone_number: str,
    repo: CallConfigurationRepository = Depends(get_repository),
) -> CallConfigurationResponse:
    try:
        config = await repo.get_by_phone(phone_number)
    except PipelineError as exc:
        raise _http_error(exc) from exc
    return CallConfigurationResponse.model_validate(config)


@router.get("/{config_id}", response_model=CallConfigurationResponse)
async def get_configuration(
    config_id: str,
    repo: CallConfigurationRepository = Depends(get_repository),
) -> CallConfigurationResponse:
    try:
        config = await repo.get_configuration(config_id)
    except PipelineError as exc:
        raise _http_error(exc) from exc
    return CallConfigurationResponse.model_validate(config)


@router.post("", response_model=CallConfigurationResponse, status_code=status.HTTP_201_CREATED)
async def create_configuration(
    payload: CallConfigurationCreate,
    repo: CallConfigurationRepository = Depends(get_repository),
) -> CallConfigurationResponse:
    try:
        config = await repo.create_configuration(payload.model_dump())
    except PipelineError as exc:
        raise _http_error(exc) from exc
    LOGGER.info("Created call configuration %s for %s", config.id, config.phone_number)
    return CallConfigurationResponse.model_validate(config)


@router.patch("/{config_id}", response_model=CallConfigurationResponse)
async def update_configuration(
    config_id: str,
    payload: CallConfigurationUpdate,
    repo: CallConfigurationRepository = Depends(get_repository),
) -> CallConfigurationResponse:
    try:
        config = await repo.update_configuration(config_id, payload.model_dump(exclude_unset=True))
    except PipelineError as exc:
        raise _http_error(exc) from exc
    LOGGER.info("Updated call configuration %s", config_id)
    return CallConfigurationResponse.model_validate(config)


@router.delete("/{config_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_configuration(
    config_id: str,
    repo: CallConfigurationRepository = Depends(get_repository),
) -> Response:
    try:
        await repo.delete_configuration(config_id)
    except PipelineError as exc:
        raise _http_error(exc) from exc
    LOGGER.info("Deleted call configuration %s", config_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
