"""Orchestrator environment selection from clientState tokens."""

from pydantic import BaseModel

from listrelay.config import (
    UIPATH_CLIENT_ID,
    UIPATH_CLIENT_SECRET,
    UIPATH_DEFAULT_QUEUE,
    UIPATH_DEV_ORCHESTRATOR_URL,
    UIPATH_DEV_ORGANIZATION_UNIT_ID,
    UIPATH_DEV_TENANT_NAME,
    UIPATH_ORCHESTRATOR_URL,
    UIPATH_ORGANIZATION_UNIT_ID,
    UIPATH_PROD_ORCHESTRATOR_URL,
    UIPATH_PROD_ORGANIZATION_UNIT_ID,
    UIPATH_PROD_TENANT_NAME,
    UIPATH_TENANT_NAME,
)
from listrelay.routing.client_state import (
    KEY_ENV,
    KEY_FOLDER,
    KEY_ORGANIZATION_UNIT,
    ClientStateTokens,
    queue_name_override,
)
from listrelay.utils.logger import get_logger

logger = get_logger("listrelay.routing.environment")


class QueueSettings(BaseModel):
    """Orchestrator connection and queue selection for one submission."""

    orchestrator_url: str = ""
    tenant_name: str = ""
    organization_unit_id: str = ""
    default_queue: str = ""
    client_id: str = ""
    client_secret: str = ""

    model_config = {"frozen": True}

    def missing(self) -> list[str]:
        """Names of settings required for submission that are empty."""
        required = ("orchestrator_url", "tenant_name", "client_id", "client_secret")
        return [name for name in required if not getattr(self, name)]


class EnvironmentPreset(BaseModel):
    tenant_name: str = ""
    organization_unit_id: str = ""
    orchestrator_url: str = ""


ENVIRONMENT_PRESETS: dict[str, EnvironmentPreset] = {
    "DEV": EnvironmentPreset(
        tenant_name=UIPATH_DEV_TENANT_NAME,
        organization_unit_id=UIPATH_DEV_ORGANIZATION_UNIT_ID,
        orchestrator_url=UIPATH_DEV_ORCHESTRATOR_URL,
    ),
    "PROD": EnvironmentPreset(
        tenant_name=UIPATH_PROD_TENANT_NAME,
        organization_unit_id=UIPATH_PROD_ORGANIZATION_UNIT_ID,
        orchestrator_url=UIPATH_PROD_ORCHESTRATOR_URL,
    ),
}


def default_queue_settings() -> QueueSettings:
    """Settings from the process environment."""
    return QueueSettings(
        orchestrator_url=UIPATH_ORCHESTRATOR_URL,
        tenant_name=UIPATH_TENANT_NAME,
        organization_unit_id=UIPATH_ORGANIZATION_UNIT_ID,
        default_queue=UIPATH_DEFAULT_QUEUE,
        client_id=UIPATH_CLIENT_ID,
        client_secret=UIPATH_CLIENT_SECRET,
    )


def resolve_queue_settings(
    tokens: ClientStateTokens,
    base: QueueSettings,
    presets: dict[str, EnvironmentPreset] | None = None,
) -> QueueSettings:
    """Apply env preset, then folder override, then queue override on top of base."""
    presets = ENVIRONMENT_PRESETS if presets is None else presets
    settings = base

    env_name = tokens.get(KEY_ENV)
    if env_name:
        preset = presets.get(env_name.upper())
        if preset is None:
            logger.warning("routing.environment.unknown_preset", env=env_name, known=list(presets))
        else:
            settings = settings.model_copy(
                update={
                    "tenant_name": preset.tenant_name or settings.tenant_name,
                    "organization_unit_id": preset.organization_unit_id or settings.organization_unit_id,
                    "orchestrator_url": preset.orchestrator_url or settings.orchestrator_url,
                }
            )

    folder = tokens.get_raw(KEY_FOLDER) or tokens.get_raw(KEY_ORGANIZATION_UNIT)
    if folder:
        settings = settings.model_copy(update={"organization_unit_id": folder})

    queue = queue_name_override(tokens)
    if queue:
        settings = settings.model_copy(update={"default_queue": queue})

    if settings != base:
        logger.debug(
            "routing.environment.resolved",
            env=env_name,
            tenant=settings.tenant_name,
            organization_unit_id=settings.organization_unit_id,
            queue=settings.default_queue,
        )
    return settings
