"""Repository utilities for call configurations."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from db.base import AsyncSessionFactory
from db.models import CallConfiguration
from pipeline.errors import ConfigurationNotFoundError, DuplicateConfigurationError
from pipeline.schemas import CallProfile

UPDATABLE_FIELDS = ("phone_number", "prompt", "welcome_message", "voice_model", "is_active")


def to_profile(config: CallConfiguration) -> CallProfile:
    return CallProfile(
        configuration_id=config.id,
        phone_number=config.phone_number,
        prompt=config.prompt,
        greeting=config.welcome_message,
        voice_model=config.voice_model,
        is_active=config.is_active,
    )


class CallConfigurationRepository:
    """Async repository encapsulating storage operations."""

    async def list_configurations(self) -> list[CallConfiguration]:
        async with AsyncSessionFactory() as session:
            result = await session.execute(select(CallConfiguration).order_by(CallConfiguration.id))
            return list(result.scalars().all())

    async def get_configuration(self, config_id: str) -> CallConfiguration:
        async with AsyncSessionFactory() as session:
            config = await session.get(CallConfiguration, config_id)
            if config is None:
                raise ConfigurationNotFoundError(f"Call configuration {config_id} not found")
            return config

    async def get_by_phone(self, phone_number: str) -> CallConfiguration:
        async with AsyncSessionFactory() as session:
            query = (
                select(CallConfiguration)
                .where(CallConfiguration.phone_number == phone_number)
                .order_by(CallConfiguration.is_active.desc(), CallConfiguration.updated_at.desc())
                .limit(1)
            )
            result = await session.execute(query)
            config = result.scalar_one_or_none()
            if config is None:
                raise ConfigurationNotFoundError(f"No call configuration for number {phone_number}")
            return config

    async def get_active_profile(self, phone_number: str) -> CallProfile:
        """Resolve the behavior for a callee; missing or inactive configurations are an error."""

        config = await self.get_by_phone(phone_number)
        if not config.is_active:
            raise ConfigurationNotFoundError(f"Call configuration for number {phone_number} is inactive")
        return to_profile(config)

    async def create_configuration(self, data: Mapping[str, Any]) -> CallConfiguration:
        async with AsyncSessionFactory() as session:
            if await session.get(CallConfiguration, data["id"]) is not None:
                raise DuplicateConfigurationError(f"Call configuration {data['id']} already exists")
            config = CallConfiguration(
                id=data["id"],
                phone_number=data["phone_number"],
                prompt=data["prompt"],
                welcome_message=data.get("welcome_message"),
                voice_model=data["voice_model"],
                is_active=data.get("is_active", True),
            )
            session.add(config)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise DuplicateConfigurationError() from exc
            await session.refresh(config)
            return config

    async def update_configuration(self, config_id: str, changes: Mapping[str, Any]) -> CallConfiguration:
        async with AsyncSessionFactory() as session:
            config = await session.get(CallConfiguration, config_id)
            if config is None:
                raise ConfigurationNotFoundError(f"Call configuration {config_id} not found")
            for field_name in UPDATABLE_FIELDS:
                if field_name in changes:
                    setattr(config, field_name, changes[field_name])
            await session.commit()
            await session.refresh(config)
            return config

    async def delete_configuration(self, config_id: str) -> None:
        async with AsyncSessionFactory() as session:
            config = await session.get(CallConfiguration, config_id)
            if config is None:
                raise ConfigurationNotFoundError(f"Call configuration {config_id} not found")
            await session.delete(config)
            await session.commit()
