"""Rollgate constants."""

from __future__ import annotations

# Roles
DEFAULT_BACKEND_ROLE = "backend"
DEFAULT_LOADBALANCER_ROLE = "loadbalancer"

# Actions understood by the built-in executors
ACTION_DEPLOY = "deploy"
ACTION_RESTART_SERVICE = "restart-service"
ACTION_RELOAD_PROXY = "reload-proxy"
ACTION_CHECK_SERVICE = "check-service"

DEFAULT_ACTION_COMMANDS = {
    ACTION_DEPLOY: "sudo -n systemctl restart {service}",
    ACTION_RESTART_SERVICE: "sudo -n systemctl restart {service}",
    ACTION_RELOAD_PROXY: "sudo -n systemctl reload {service}",
    ACTION_CHECK_SERVICE: "sudo -n systemctl is-active {service}",
}

# Front-door update and recovery actions, keyed by role.
# Roles missing from these maps fall back to deploy / restart-service.
DEFAULT_UPDATE_ACTIONS = {
    DEFAULT_BACKEND_ROLE: ACTION_DEPLOY,
    DEFAULT_LOADBALANCER_ROLE: ACTION_RELOAD_PROXY,
}
DEFAULT_RECOVERY_ACTIONS = {
    DEFAULT_BACKEND_ROLE: ACTION_RESTART_SERVICE,
    DEFAULT_LOADBALANCER_ROLE: ACTION_RELOAD_PROXY,
}

# Health check defaults (seconds)
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_DELAY_S = 10.0
DEFAULT_PER_ATTEMPT_TIMEOUT_S = 30.0
DEFAULT_POST_VALIDATE_ATTEMPTS = 5
DEFAULT_PRE_VALIDATE_ATTEMPTS = 1
DEFAULT_SETTLE_TIME_S = 30.0
DEFAULT_RUN_TIMEOUT_S = 30 * 60.0
DEFAULT_API_PATH = "/api/employees"
DEFAULT_HEALTH_PATH = "/"
DEFAULT_WORKERS = 10

# Transport
SSH_TIMEOUT_EXIT_CODE = 124
SSH_ERROR_EXIT_CODE = 255
DEFAULT_CONNECT_TIMEOUT_S = 10
CONNECTION_ERROR_MARKERS = (
    "Connection refused",
    "Connection timed out",
    "Could not resolve hostname",
    "No route to host",
)

# Local state
STATE_DIR_NAME = ".rollgate"
EVENT_LOG_FILE_NAME = "events.jsonl"
DEFAULT_INVENTORY_FILE_NAME = "inventory.yaml"
INVENTORY_ENV_VAR = "ROLLGATE_INVENTORY"
ACTOR_ENV_VAR = "ROLLGATE_ACTOR"
