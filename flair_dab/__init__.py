"""Flair Dynamic Airflow Balancing integration."""
from __future__ import annotations

import logging

import voluptuous as vol
from homeassistant.config_entries import SOURCE_IMPORT, ConfigEntry
from homeassistant.core import HomeAssistant
from homeassistant.exceptions import ConfigEntryError
from homeassistant.helpers.typing import ConfigType

from .config import CONFIG_SCHEMA  # noqa: F401
from .const import DOMAIN
from .coordinator import DabCoordinator
from .services import async_register_services, async_unregister_services

_LOGGER = logging.getLogger(__name__)


async def async_setup(hass: HomeAssistant, config: ConfigType) -> bool:
    """Import YAML configuration into the config entry."""
    hass.data.setdefault(DOMAIN, {})
    if DOMAIN not in config:
        return True

    options = dict(config[DOMAIN])
    entries = hass.config_entries.async_entries(DOMAIN)
    if entries:
        hass.config_entries.async_update_entry(entries[0], options=options)
        return True

    hass.async_create_task(
        hass.config_entries.flow.async_init(
            DOMAIN, context={"source": SOURCE_IMPORT}, data=options
        )
    )
    return True


async def async_setup_entry(hass: HomeAssistant, entry: ConfigEntry) -> bool:
    """Set up Flair DAB from a config entry."""
    hass.data.setdefault(DOMAIN, {})

    try:
        coordinator = DabCoordinator(hass, entry)
    except vol.Invalid as err:
        raise ConfigEntryError(f"Invalid Flair DAB options: {err}") from err

    await coordinator.async_initialize()
    coordinator.async_start()

    hass.data[DOMAIN][entry.entry_id] = coordinator
    await async_register_services(hass)

    entry.async_on_unload(entry.add_update_listener(_async_update_listener))
    _LOGGER.debug("Flair DAB entry %s set up with %s rooms", entry.entry_id, len(coordinator.config.rooms))
    return True


async def async_unload_entry(hass: HomeAssistant, entry: ConfigEntry) -> bool:
    """Unload a config entry."""
    coordinator = hass.data.get(DOMAIN, {}).pop(entry.entry_id, None)
    if coordinator:
        await coordinator.async_shutdown()
    await async_unregister_services(hass)
    return True


async def _async_update_listener(hass: HomeAssistant, entry: ConfigEntry) -> None:
    """Handle options updates."""
    await hass.config_entries.async_reload(entry.entry_id)
