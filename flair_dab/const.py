"""Constants for the Flair DAB integration."""
from __future__ import annotations

DOMAIN = "flair_dab"

CONF_ENTRY_ID = "entry_id"
CONF_DAB_ENABLED = "dab_enabled"
CONF_THERMOSTAT_ENTITY = "thermostat_entity"
CONF_ROOMS = "rooms"
CONF_ROOM_ID = "room_id"
CONF_NAME = "name"
CONF_TEMP_SENSOR_ENTITY = "temp_sensor_entity"
CONF_ACTIVE = "active"
CONF_VENTS = "vents"
CONF_VENT_ID = "vent_id"
CONF_WEIGHT = "weight"
CONF_DUCT_SENSOR_ENTITY = "duct_sensor_entity"
CONF_STANDARD_VENTS = "standard_vents"
CONF_CLOSE_INACTIVE_ROOMS = "close_inactive_rooms"
CONF_RETENTION_DAYS = "retention_days"
CONF_MIN_AIRFLOW_PERCENT = "min_airflow_percent"
CONF_VENT_GRANULARITY = "vent_granularity"
CONF_EWMA_ENABLED = "ewma_enabled"
CONF_EWMA_HALF_LIFE_DAYS = "ewma_half_life_days"
CONF_OUTLIER_ENABLED = "outlier_rejection_enabled"
CONF_OUTLIER_THRESHOLD_MAD = "outlier_threshold_mad"
CONF_OUTLIER_MODE = "outlier_mode"
CONF_CARRY_FORWARD = "carry_forward_last_hour"
CONF_ADAPTIVE_ENABLED = "adaptive_boost_enabled"
CONF_ADAPTIVE_LOOKBACK = "adaptive_lookback_periods"
CONF_ADAPTIVE_THRESHOLD = "adaptive_threshold_percent"
CONF_ADAPTIVE_BOOST = "adaptive_boost_percent"
CONF_ADAPTIVE_MAX_BOOST = "adaptive_max_boost_percent"
CONF_MIN_VENT_FLOOR = "min_vent_floor_percent"
CONF_ALLOW_FULL_CLOSE = "allow_full_close"
CONF_FAN_ONLY_OPEN_ALL = "fan_only_open_all"
CONF_FAIL_FAST = "fail_fast_finalization"

CONF_HVAC_MODE = "hvac_mode"
CONF_HOUR = "hour"
CONF_PERCENT = "percent"
CONF_FORMAT = "format"
CONF_PATH = "path"

SERVICE_RUN_DAB = "run_dab"
SERVICE_PLAN_CYCLE = "plan_cycle"
SERVICE_AVERAGE_RATE = "average_rate"
SERVICE_EXPORT_HISTORY = "export_history"
SERVICE_CLEAR_LEARNED_DATA = "clear_learned_data"
SERVICE_SET_MANUAL_OVERRIDE = "set_manual_override"
SERVICE_CLEAR_MANUAL_OVERRIDE = "clear_manual_override"

OUTLIER_MODE_REJECT = "reject"
OUTLIER_MODE_CLIP = "clip"
EXPORT_FORMATS = ["json", "csv"]
GRANULARITY_OPTIONS = [5, 10, 25, 50, 100]

DEFAULT_DAB_ENABLED = True
DEFAULT_CLOSE_INACTIVE_ROOMS = True
DEFAULT_STANDARD_VENTS = 0
MAX_STANDARD_VENTS = 15
DEFAULT_RETENTION_DAYS = 10
MIN_RETENTION_DAYS = 1
MAX_RETENTION_DAYS = 365
DEFAULT_MIN_AIRFLOW_PERCENT = 30.0
DEFAULT_VENT_GRANULARITY = 5
DEFAULT_EWMA_ENABLED = False
DEFAULT_EWMA_HALF_LIFE_DAYS = 3.0
DEFAULT_OUTLIER_ENABLED = False
DEFAULT_OUTLIER_THRESHOLD_MAD = 3.0
DEFAULT_OUTLIER_MODE = OUTLIER_MODE_CLIP
DEFAULT_CARRY_FORWARD = True
DEFAULT_ADAPTIVE_ENABLED = True
DEFAULT_ADAPTIVE_LOOKBACK = 3
DEFAULT_ADAPTIVE_THRESHOLD = 25.0
DEFAULT_ADAPTIVE_BOOST = 12.5
DEFAULT_ADAPTIVE_MAX_BOOST = 25.0
DEFAULT_MIN_VENT_FLOOR = 0
DEFAULT_ALLOW_FULL_CLOSE = True
DEFAULT_FAN_ONLY_OPEN_ALL = False
DEFAULT_FAIL_FAST = False
DEFAULT_VENT_WEIGHT = 1.0
MIN_VENT_WEIGHT = 0.1
MAX_VENT_WEIGHT = 10.0

STORAGE_VERSION = 1
STORAGE_KEY_HISTORY = "history"
STORAGE_KEY_STATE = "state"
STORAGE_KEY_CYCLE = "cycle"

NOTIFICATION_TITLE = "Flair DAB"
