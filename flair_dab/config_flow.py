"""Config flow for the Flair DAB integration."""
from __future__ import annotations

import logging
from typing import Any

import voluptuous as vol
from homeassistant import config_entries
from homeassistant.core import callback
from homeassistant.helpers import selector

from .config import OPTIONS_SCHEMA, ROOM_SCHEMA
from .const import (
    CONF_ACTIVE,
    CONF_ADAPTIVE_BOOST,
    CONF_ADAPTIVE_ENABLED,
    CONF_ADAPTIVE_LOOKBACK,
    CONF_ADAPTIVE_MAX_BOOST,
    CONF_ADAPTIVE_THRESHOLD,
    CONF_ALLOW_FULL_CLOSE,
    CONF_CARRY_FORWARD,
    CONF_CLOSE_INACTIVE_ROOMS,
    CONF_DAB_ENABLED,
    CONF_DUCT_SENSOR_ENTITY,
    CONF_EWMA_ENABLED,
    CONF_EWMA_HALF_LIFE_DAYS,
    CONF_FAIL_FAST,
    CONF_FAN_ONLY_OPEN_ALL,
    CONF_MIN_AIRFLOW_PERCENT,
    CONF_MIN_VENT_FLOOR,
    CONF_NAME,
    CONF_OUTLIER_ENABLED,
    CONF_OUTLIER_MODE,
    CONF_OUTLIER_THRESHOLD_MAD,
    CONF_RETENTION_DAYS,
    CONF_ROOM_ID,
    CONF_ROOMS,
    CONF_STANDARD_VENTS,
    CONF_TEMP_SENSOR_ENTITY,
    CONF_THERMOSTAT_ENTITY,
    CONF_VENT_GRANULARITY,
    CONF_VENT_ID,
    CONF_VENTS,
    DOMAIN,
    GRANULARITY_OPTIONS,
    NOTIFICATION_TITLE,
    OUTLIER_MODE_CLIP,
    OUTLIER_MODE_REJECT,
)

_LOGGER = logging.getLogger(__name__)

SETTING_KEYS = (
    CONF_DAB_ENABLED,
    CONF_CLOSE_INACTIVE_ROOMS,
    CONF_STANDARD_VENTS,
    CONF_MIN_AIRFLOW_PERCENT,
    CONF_VENT_GRANULARITY,
    CONF_MIN_VENT_FLOOR,
    CONF_ALLOW_FULL_CLOSE,
    CONF_FAN_ONLY_OPEN_ALL,
    CONF_FAIL_FAST,
)

LEARNING_KEYS = (
    CONF_RETENTION_DAYS,
    CONF_EWMA_ENABLED,
    CONF_EWMA_HALF_LIFE_DAYS,
    CONF_OUTLIER_ENABLED,
    CONF_OUTLIER_THRESHOLD_MAD,
    CONF_OUTLIER_MODE,
    CONF_CARRY_FORWARD,
    CONF_ADAPTIVE_ENABLED,
    CONF_ADAPTIVE_LOOKBACK,
    CONF_ADAPTIVE_THRESHOLD,
    CONF_ADAPTIVE_BOOST,
    CONF_ADAPTIVE_MAX_BOOST,
)


def _defaults(options: dict[str, Any]) -> dict[str, Any]:
    """Options merged over schema defaults; invalid stored values fall back to defaults."""
    try:
        return OPTIONS_SCHEMA(dict(options))
    except vol.Invalid:
        _LOGGER.warning("Stored options are invalid; showing defaults")
        return OPTIONS_SCHEMA({})


def settings_schema(options: dict[str, Any]) -> vol.Schema:
    current = _defaults(options)
    return vol.Schema(
        {
            vol.Required(CONF_DAB_ENABLED, default=current[CONF_DAB_ENABLED]): bool,
            vol.Optional(
                CONF_THERMOSTAT_ENTITY,
                description={"suggested_value": current.get(CONF_THERMOSTAT_ENTITY)},
            ): selector.EntitySelector(selector.EntitySelectorConfig(domain="climate")),
            vol.Required(
                CONF_CLOSE_INACTIVE_ROOMS, default=current[CONF_CLOSE_INACTIVE_ROOMS]
            ): bool,
            vol.Required(CONF_STANDARD_VENTS, default=current[CONF_STANDARD_VENTS]): vol.All(
                vol.Coerce(int), vol.Range(min=0, max=15)
            ),
            vol.Required(
                CONF_MIN_AIRFLOW_PERCENT, default=current[CONF_MIN_AIRFLOW_PERCENT]
            ): vol.All(vol.Coerce(float), vol.Range(min=0, max=100)),
            vol.Required(
                CONF_VENT_GRANULARITY, default=str(current[CONF_VENT_GRANULARITY])
            ): selector.SelectSelector(
                selector.SelectSelectorConfig(
                    options=[str(value) for value in GRANULARITY_OPTIONS],
                    mode=selector.SelectSelectorMode.DROPDOWN,
                )
            ),
            vol.Required(CONF_MIN_VENT_FLOOR, default=current[CONF_MIN_VENT_FLOOR]): vol.All(
                vol.Coerce(int), vol.Range(min=0, max=100)
            ),
            vol.Required(CONF_ALLOW_FULL_CLOSE, default=current[CONF_ALLOW_FULL_CLOSE]): bool,
            vol.Required(
                CONF_FAN_ONLY_OPEN_ALL, default=current[CONF_FAN_ONLY_OPEN_ALL]
            ): bool,
            vol.Required(CONF_FAIL_FAST, default=current[CONF_FAIL_FAST]): bool,
        }
    )


def learning_schema(options: dict[str, Any]) -> vol.Schema:
    current = _defaults(options)
    return vol.Schema(
        {
            vol.Required(CONF_RETENTION_DAYS, default=current[CONF_RETENTION_DAYS]): vol.All(
                vol.Coerce(int), vol.Range(min=1, max=365)
            ),
            vol.Required(CONF_EWMA_ENABLED, default=current[CONF_EWMA_ENABLED]): bool,
            vol.Required(
                CONF_EWMA_HALF_LIFE_DAYS, default=current[CONF_EWMA_HALF_LIFE_DAYS]
            ): vol.All(vol.Coerce(float), vol.Range(min=0)),
            vol.Required(CONF_OUTLIER_ENABLED, default=current[CONF_OUTLIER_ENABLED]): bool,
            vol.Required(
                CONF_OUTLIER_THRESHOLD_MAD, default=current[CONF_OUTLIER_THRESHOLD_MAD]
            ): vol.All(vol.Coerce(float), vol.Range(min=0.5, max=10)),
            vol.Required(CONF_OUTLIER_MODE, default=current[CONF_OUTLIER_MODE]): vol.In(
                [OUTLIER_MODE_CLIP, OUTLIER_MODE_REJECT]
            ),
            vol.Required(CONF_CARRY_FORWARD, default=current[CONF_CARRY_FORWARD]): bool,
            vol.Required(CONF_ADAPTIVE_ENABLED, default=current[CONF_ADAPTIVE_ENABLED]): bool,
            vol.Required(
                CONF_ADAPTIVE_LOOKBACK, default=current[CONF_ADAPTIVE_LOOKBACK]
            ): vol.All(vol.Coerce(int), vol.Range(min=1, max=24)),
            vol.Required(
                CONF_ADAPTIVE_THRESHOLD, default=current[CONF_ADAPTIVE_THRESHOLD]
            ): vol.All(vol.Coerce(float), vol.Range(min=0, max=100)),
            vol.Required(CONF_ADAPTIVE_BOOST, default=current[CONF_ADAPTIVE_BOOST]): vol.All(
                vol.Coerce(float), vol.Range(min=0, max=100)
            ),
            vol.Required(
                CONF_ADAPTIVE_MAX_BOOST, default=current[CONF_ADAPTIVE_MAX_BOOST]
            ): vol.All(vol.Coerce(float), vol.Range(min=0, max=100)),
        }
    )


ROOM_FORM_SCHEMA = vol.Schema(
    {
        vol.Required(CONF_ROOM_ID): str,
        vol.Optional(CONF_NAME): str,
        vol.Optional(CONF_TEMP_SENSOR_ENTITY): selector.EntitySelector(
            selector.EntitySelectorConfig(domain="sensor", device_class="temperature")
        ),
        vol.Required(CONF_ACTIVE, default=True): bool,
        vol.Required(CONF_VENTS): selector.EntitySelector(
            selector.EntitySelectorConfig(domain="cover", multiple=True)
        ),
        vol.Optional(CONF_DUCT_SENSOR_ENTITY): selector.EntitySelector(
            selector.EntitySelectorConfig(domain="sensor", device_class="temperature")
        ),
    }
)


def merge_room(options: dict[str, Any], user_input: dict[str, Any]) -> dict[str, Any]:
    """Insert or replace a room in ``options`` from the room form.

    The form's duct sensor is shared by every vent it selects. Raises ``vol.Invalid``
    when the merged rooms fail validation.
    """
    duct_sensor = user_input.get(CONF_DUCT_SENSOR_ENTITY)
    vents = [
        {CONF_VENT_ID: vent_id, CONF_DUCT_SENSOR_ENTITY: duct_sensor}
        for vent_id in user_input.get(CONF_VENTS) or []
    ]
    room = ROOM_SCHEMA(
        {
            CONF_ROOM_ID: user_input[CONF_ROOM_ID],
            CONF_NAME: user_input.get(CONF_NAME) or user_input[CONF_ROOM_ID],
            CONF_TEMP_SENSOR_ENTITY: user_input.get(CONF_TEMP_SENSOR_ENTITY),
            CONF_ACTIVE: user_input.get(CONF_ACTIVE, True),
            CONF_VENTS: vents,
        }
    )
    rooms = [
        existing
        for existing in options.get(CONF_ROOMS, [])
        if str(existing.get(CONF_ROOM_ID)) != room[CONF_ROOM_ID]
    ]
    rooms.append(room)
    merged = dict(options)
    merged[CONF_ROOMS] = rooms
    OPTIONS_SCHEMA(merged)
    return merged


class FlairDabConfigFlow(config_entries.ConfigFlow, domain=DOMAIN):
    """Single-instance config flow; rooms come from YAML or the options flow."""

    VERSION = 1

    async def async_step_user(self, user_input: dict[str, Any] | None = None):
        await self.async_set_unique_id(DOMAIN)
        self._abort_if_unique_id_configured()

        if user_input is not None:
            options: dict[str, Any] = {}
            if user_input.get(CONF_THERMOSTAT_ENTITY):
                options[CONF_THERMOSTAT_ENTITY] = user_input[CONF_THERMOSTAT_ENTITY]
            return self.async_create_entry(title=NOTIFICATION_TITLE, data={}, options=options)

        return self.async_show_form(
            step_id="user",
            data_schema=vol.Schema(
                {
                    vol.Optional(CONF_THERMOSTAT_ENTITY): selector.EntitySelector(
                        selector.EntitySelectorConfig(domain="climate")
                    ),
                }
            ),
        )

    async def async_step_import(self, import_data: dict[str, Any]):
        """Create the entry from YAML configuration."""
        await self.async_set_unique_id(DOMAIN)
        self._abort_if_unique_id_configured()
        return self.async_create_entry(
            title=NOTIFICATION_TITLE, data={}, options=dict(import_data)
        )

    @staticmethod
    @callback
    def async_get_options_flow(config_entry: config_entries.ConfigEntry):
        """Get the options flow for this handler."""
        return FlairDabOptionsFlow()


class FlairDabOptionsFlow(config_entries.OptionsFlow):
    """Edit settings and rooms of an existing entry."""

    async def async_step_init(self, user_input: dict[str, Any] | None = None):
        return self.async_show_menu(
            step_id="init",
            menu_options={
                "settings": "Balancing & Safety",
                "learning": "Rate Learning",
                "room": "Add or Update Room",
            },
        )

    async def async_step_settings(self, user_input: dict[str, Any] | None = None):
        options = dict(self.config_entry.options)
        if user_input is not None:
            options.update({key: user_input[key] for key in SETTING_KEYS})
            options[CONF_VENT_GRANULARITY] = int(user_input[CONF_VENT_GRANULARITY])
            options[CONF_THERMOSTAT_ENTITY] = user_input.get(CONF_THERMOSTAT_ENTITY)
            return self.async_create_entry(title="", data=options)

        return self.async_show_form(step_id="settings", data_schema=settings_schema(options))

    async def async_step_learning(self, user_input: dict[str, Any] | None = None):
        options = dict(self.config_entry.options)
        if user_input is not None:
            options.update({key: user_input[key] for key in LEARNING_KEYS})
            return self.async_create_entry(title="", data=options)

        return self.async_show_form(step_id="learning", data_schema=learning_schema(options))

    async def async_step_room(self, user_input: dict[str, Any] | None = None):
        errors: dict[str, str] = {}
        if user_input is not None:
            try:
                options = merge_room(dict(self.config_entry.options), user_input)
            except vol.Invalid as err:
                _LOGGER.warning("Rejected room configuration: %s", err)
                errors["base"] = "invalid_room"
            else:
                return self.async_create_entry(title="", data=options)

        return self.async_show_form(step_id="room", data_schema=ROOM_FORM_SCHEMA, errors=errors)
