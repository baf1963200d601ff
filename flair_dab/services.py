"""Service handlers for Flair DAB."""
from __future__ import annotations

import logging
import os
from typing import Any

import voluptuous as vol
from homeassistant.components import persistent_notification
from homeassistant.core import HomeAssistant, ServiceCall, SupportsResponse

from .const import (
    CONF_ENTRY_ID,
    CONF_FORMAT,
    CONF_HOUR,
    CONF_HVAC_MODE,
    CONF_PATH,
    CONF_PERCENT,
    CONF_ROOM_ID,
    CONF_VENT_ID,
    DOMAIN,
    EXPORT_FORMATS,
    NOTIFICATION_TITLE,
    SERVICE_AVERAGE_RATE,
    SERVICE_CLEAR_LEARNED_DATA,
    SERVICE_CLEAR_MANUAL_OVERRIDE,
    SERVICE_EXPORT_HISTORY,
    SERVICE_PLAN_CYCLE,
    SERVICE_RUN_DAB,
    SERVICE_SET_MANUAL_OVERRIDE,
)
from .coordinator import DabCoordinator
from .models import HvacMode

_LOGGER = logging.getLogger(__name__)

ACTIVE_MODES = [HvacMode.COOLING.value, HvacMode.HEATING.value]

ENTRY_SCHEMA = vol.Schema({vol.Optional(CONF_ENTRY_ID): str})

PLAN_CYCLE_SCHEMA = vol.Schema(
    {
        vol.Optional(CONF_ENTRY_ID): str,
        vol.Required(CONF_HVAC_MODE): vol.In(ACTIVE_MODES),
    }
)

AVERAGE_RATE_SCHEMA = vol.Schema(
    {
        vol.Optional(CONF_ENTRY_ID): str,
        vol.Required(CONF_ROOM_ID): vol.Coerce(str),
        vol.Required(CONF_HVAC_MODE): vol.In(ACTIVE_MODES),
        vol.Optional(CONF_HOUR): vol.All(vol.Coerce(int), vol.Range(min=0, max=23)),
    }
)

EXPORT_HISTORY_SCHEMA = vol.Schema(
    {
        vol.Optional(CONF_ENTRY_ID): str,
        vol.Optional(CONF_FORMAT, default="json"): vol.In(EXPORT_FORMATS),
        vol.Optional(CONF_PATH): str,
    }
)

SET_MANUAL_OVERRIDE_SCHEMA = vol.Schema(
    {
        vol.Optional(CONF_ENTRY_ID): str,
        vol.Required(CONF_VENT_ID): str,
        vol.Required(CONF_PERCENT): vol.All(vol.Coerce(float), vol.Range(min=0, max=100)),
    }
)

CLEAR_MANUAL_OVERRIDE_SCHEMA = vol.Schema(
    {
        vol.Optional(CONF_ENTRY_ID): str,
        vol.Optional(CONF_VENT_ID): str,
    }
)

ALL_SERVICES = [
    SERVICE_RUN_DAB,
    SERVICE_PLAN_CYCLE,
    SERVICE_AVERAGE_RATE,
    SERVICE_EXPORT_HISTORY,
    SERVICE_CLEAR_LEARNED_DATA,
    SERVICE_SET_MANUAL_OVERRIDE,
    SERVICE_CLEAR_MANUAL_OVERRIDE,
]


def _notify_failure(hass: HomeAssistant, message: str) -> None:
    persistent_notification.async_create(hass, message, title=f"{NOTIFICATION_TITLE} error")


async def async_register_services(hass: HomeAssistant) -> None:
    """Register integration services."""
    domain_data = hass.data.setdefault(DOMAIN, {})
    if domain_data.get("_services_registered"):
        return

    async def handle_run_dab(call: ServiceCall) -> None:
        coordinator = _get_coordinator(hass, call.data.get(CONF_ENTRY_ID))
        if not coordinator:
            return
        try:
            if not coordinator.run_dab():
                _LOGGER.info("Rebalance skipped; no eligible HVAC cycle running")
        except Exception as err:  # noqa: BLE001
            _LOGGER.exception("Failed to run DAB: %s", err)
            _notify_failure(hass, f"Failed to run DAB: {err}")

    async def handle_plan_cycle(call: ServiceCall) -> dict[str, Any]:
        coordinator = _get_coordinator(hass, call.data.get(CONF_ENTRY_ID))
        if not coordinator:
            return {"error": "No coordinator found"}
        try:
            return {"positions": coordinator.plan_cycle(call.data[CONF_HVAC_MODE])}
        except Exception as err:  # noqa: BLE001
            _LOGGER.exception("Failed to plan DAB cycle: %s", err)
            _notify_failure(hass, f"Failed to plan DAB cycle: {err}")
            return {"error": str(err)}

    async def handle_average_rate(call: ServiceCall) -> dict[str, Any]:
        coordinator = _get_coordinator(hass, call.data.get(CONF_ENTRY_ID))
        if not coordinator:
            return {"error": "No coordinator found"}
        try:
            rate = coordinator.average_rate(
                call.data[CONF_ROOM_ID], call.data[CONF_HVAC_MODE], call.data.get(CONF_HOUR)
            )
            return {"rate": round(rate, 6)}
        except Exception as err:  # noqa: BLE001
            _LOGGER.exception("Failed to read average rate: %s", err)
            _notify_failure(hass, f"Failed to read average rate: {err}")
            return {"error": str(err)}

    async def handle_export_history(call: ServiceCall) -> dict[str, Any]:
        coordinator = _get_coordinator(hass, call.data.get(CONF_ENTRY_ID))
        if not coordinator:
            return {"error": "No coordinator found"}
        fmt = call.data.get(CONF_FORMAT, "json")
        try:
            payload = coordinator.export_history(fmt)
            path_input = call.data.get(CONF_PATH)
            if path_input:
                path = _resolve_export_path(
                    hass,
                    path_input,
                    f"{DOMAIN}_history_{coordinator.entry.entry_id}.{fmt}",
                )
                await hass.async_add_executor_job(_save_text, path, payload)
                _LOGGER.info("Exported rate history to %s", path)
                return {"saved_to": path}
            return {"format": fmt, "data": payload}
        except Exception as err:  # noqa: BLE001
            _LOGGER.exception("Failed to export rate history: %s", err)
            _notify_failure(hass, f"Failed to export rate history: {err}")
            return {"error": str(err)}

    async def handle_clear_learned_data(call: ServiceCall) -> None:
        coordinator = _get_coordinator(hass, call.data.get(CONF_ENTRY_ID))
        if not coordinator:
            return
        try:
            coordinator.clear_all_learned_data()
        except Exception as err:  # noqa: BLE001
            _LOGGER.exception("Failed to clear learned data: %s", err)
            _notify_failure(hass, f"Failed to clear learned data: {err}")

    async def handle_set_manual_override(call: ServiceCall) -> None:
        coordinator = _get_coordinator(hass, call.data.get(CONF_ENTRY_ID))
        if not coordinator:
            return
        vent_id = call.data[CONF_VENT_ID]
        try:
            coordinator.set_manual_override(vent_id, call.data[CONF_PERCENT])
        except Exception as err:  # noqa: BLE001
            _LOGGER.exception("Failed to set manual override: %s", err)
            _notify_failure(hass, f"Failed to set manual override for {vent_id}: {err}")

    async def handle_clear_manual_override(call: ServiceCall) -> None:
        coordinator = _get_coordinator(hass, call.data.get(CONF_ENTRY_ID))
        if not coordinator:
            return
        try:
            coordinator.clear_manual_override(call.data.get(CONF_VENT_ID))
        except Exception as err:  # noqa: BLE001
            _LOGGER.exception("Failed to clear manual override: %s", err)
            _notify_failure(hass, f"Failed to clear manual override: {err}")

    hass.services.async_register(DOMAIN, SERVICE_RUN_DAB, handle_run_dab, schema=ENTRY_SCHEMA)
    hass.services.async_register(
        DOMAIN,
        SERVICE_PLAN_CYCLE,
        handle_plan_cycle,
        schema=PLAN_CYCLE_SCHEMA,
        supports_response=SupportsResponse.ONLY,
    )
    hass.services.async_register(
        DOMAIN,
        SERVICE_AVERAGE_RATE,
        handle_average_rate,
        schema=AVERAGE_RATE_SCHEMA,
        supports_response=SupportsResponse.ONLY,
    )
    hass.services.async_register(
        DOMAIN,
        SERVICE_EXPORT_HISTORY,
        handle_export_history,
        schema=EXPORT_HISTORY_SCHEMA,
        supports_response=SupportsResponse.OPTIONAL,
    )
    hass.services.async_register(
        DOMAIN, SERVICE_CLEAR_LEARNED_DATA, handle_clear_learned_data, schema=ENTRY_SCHEMA
    )
    hass.services.async_register(
        DOMAIN,
        SERVICE_SET_MANUAL_OVERRIDE,
        handle_set_manual_override,
        schema=SET_MANUAL_OVERRIDE_SCHEMA,
    )
    hass.services.async_register(
        DOMAIN,
        SERVICE_CLEAR_MANUAL_OVERRIDE,
        handle_clear_manual_override,
        schema=CLEAR_MANUAL_OVERRIDE_SCHEMA,
    )

    domain_data["_services_registered"] = True


async def async_unregister_services(hass: HomeAssistant) -> None:
    """Unregister services if no entries remain."""
    domain_data = hass.data.get(DOMAIN, {})
    remaining = [value for value in domain_data.values() if isinstance(value, DabCoordinator)]
    if remaining:
        return

    if domain_data.pop("_services_registered", None):
        for service in ALL_SERVICES:
            hass.services.async_remove(DOMAIN, service)


def _get_coordinator(hass: HomeAssistant, entry_id: str | None) -> DabCoordinator | None:
    domain_data = hass.data.get(DOMAIN, {})
    if entry_id:
        coordinator = domain_data.get(entry_id)
        if isinstance(coordinator, DabCoordinator):
            return coordinator
        _LOGGER.error("No coordinator found for entry_id=%s", entry_id)
        return None

    coordinators = [value for value in domain_data.values() if isinstance(value, DabCoordinator)]
    if len(coordinators) == 1:
        return coordinators[0]

    if not coordinators:
        _LOGGER.error("No Flair DAB entries loaded")
    else:
        _LOGGER.error("Multiple Flair DAB entries found; specify entry_id")
    return None


def _resolve_export_path(hass: HomeAssistant, path: str | None, default_name: str) -> str:
    base_path = hass.config.path("")
    if not path:
        path = hass.config.path(default_name)
    elif not os.path.isabs(path):
        path = hass.config.path(path)

    base_real = os.path.realpath(base_path)
    path_real = os.path.realpath(path)

    if os.path.commonpath([base_real, path_real]) != base_real:
        if not hass.config.is_allowed_path(path_real):
            raise ValueError("Path is not allowed by Home Assistant")

    return path_real


def _save_text(path: str, payload: str) -> None:
    with open(path, "w", encoding="utf-8") as file:
        file.write(payload)
