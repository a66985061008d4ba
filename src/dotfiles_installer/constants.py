STATE_DIR_NAME = ".dotfiles_installer"
CONFIG_FILE = "config.yaml"
PLAN_FILE = "install_plan.yaml"
RUNS_DIR = "runs"
LOGS_DIR = "logs"
SUMMARY_FILE = "summary.json"
EVENTS_FILE = "events.jsonl"
LATEST_LOG_POINTER = "latest.log"

VISIBLE_STATUS_FILE = "DOTFILES-INSTALLATION-STATUS.txt"
DEFAULT_CACHE_DIR = "~/.cache"
JUST_INSTALLED_MARKER = "dotfiles_just_installed"
SUMMARY_MARKER = "dotfiles_summary"

DEFAULT_PACKAGE_TIMEOUT_SECONDS = 300
DEFAULT_SCRIPT_TIMEOUT_SECONDS = 900  # Emergency kill switch for the whole run
DEFAULT_PHASE_TIMEOUT_SECONDS = 600
DEFAULT_HEARTBEAT_SECONDS = 10
DEFAULT_PHASE_HEARTBEAT_SECONDS = 15
DEFAULT_GRACE_SECONDS = 1.0
DEFAULT_MAX_OUTPUT_BYTES = 64 * 1024
DEFAULT_LOG_LEVEL = "INFO"

EXIT_OK = 0
EXIT_REQUIRED_FAILURE = 1
EXIT_CONFIG_ERROR = 2
EXIT_GLOBAL_TIMEOUT = 124
EXIT_INTERRUPTED = 130

ERROR_TYPE_TASK_TIMEOUT = "task_timeout"
ERROR_TYPE_TASK_FAILURE = "task_failure"
ERROR_TYPE_PHASE_TIMEOUT = "phase_timeout"
ERROR_TYPE_SPAWN_FAILED = "spawn_failed"

VALID_CRITICALITIES = {"required", "optional"}

# Shown in the final report when the run stops early
ABORT_RESOLUTION_STEPS = {
    "global_timeout": [
        "A package installation probably hung; inspect the run log for the last command.",
        "Raise --global-timeout or the per-task timeout if the network is slow.",
    ],
    "signal": [
        "The installation was interrupted; re-run dotfiles-installer to finish it.",
    ],
    "required_failure": [
        "Inspect the task log listed for each failed REQUIRED task.",
        "Fix the underlying tool (npm, pip, network) and re-run the installer.",
    ],
}
