"""Pydantic models describing admin and webhook payloads."""

from __future__ import annotations

from typing import Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from .config import MAX_SYNC_INTERVAL_MINUTES, MIN_SYNC_INTERVAL_MINUTES
from .entities import WEBHOOK_ENTITY_ALIASES

SyncKind = Literal["full", "incremental"]
WebhookAction = Literal["create", "update", "delete"]


class WebhookPayload(BaseModel):
    """Single-entity change notification sent by an upstream plugin."""

    model_config = ConfigDict(populate_by_name=True)

    entity_type: str = Field(
        validation_alias=AliasChoices("entityType", "entity_type", "entity", "type")
    )
    entity_id: str = Field(
        validation_alias=AliasChoices("entityId", "entity_id", "externalId", "id")
    )
    action: WebhookAction
    instance_id: str | None = Field(
        default=None, validation_alias=AliasChoices("instanceId", "instance_id")
    )

    @field_validator("entity_type", mode="before")
    @classmethod
    def _normalise_entity_type(cls, value: object) -> str:
        text = str(value or "").strip().lower().replace("-", "_")
        resolved = WEBHOOK_ENTITY_ALIASES.get(text)
        if resolved is None:
            raise ValueError(
                "entityType must be one of: "
                + ", ".join(sorted(set(WEBHOOK_ENTITY_ALIASES)))
            )
        return resolved

    @field_validator("entity_id", mode="before")
    @classmethod
    def _normalise_entity_id(cls, value: object) -> str:
        if value is None or isinstance(value, (bool, dict, list)):
            raise ValueError("entityId is required")
        text = str(value).strip()
        if not text:
            raise ValueError("entityId is required")
        return text

    @field_validator("action", mode="before")
    @classmethod
    def _normalise_action(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().lower()
        return value


class SyncSettingsUpdate(BaseModel):
    """Partial update of the persisted sync schedule."""

    model_config = ConfigDict(populate_by_name=True)

    sync_interval_minutes: int | None = Field(
        default=None,
        ge=MIN_SYNC_INTERVAL_MINUTES,
        le=MAX_SYNC_INTERVAL_MINUTES,
        validation_alias=AliasChoices(
            "syncIntervalMinutes", "sync_interval_minutes", "intervalMinutes"
        ),
    )
    enable_plugin_webhook: bool | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "enablePluginWebhook", "enable_plugin_webhook", "webhookEnabled"
        ),
    )
    enable_scan_subscription: bool | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "enableScanSubscription", "enable_scan_subscription", "subscriptionEnabled"
        ),
    )


class TriggerRequest(BaseModel):
    kind: SyncKind = Field(
        default="incremental", validation_alias=AliasChoices("type", "kind")
    )


class ReconcileRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    target_id: str = Field(validation_alias=AliasChoices("targetId", "target_id"))
    target_instance_id: str = Field(
        validation_alias=AliasChoices("targetInstanceId", "target_instance_id")
    )
