STATE_DIR_NAME = ".plan_coordinator"
CONFIG_FILE = "config.yaml"
PEERS_FILE = "peers.yaml"
PEERS_LOCK_FILE = "peers.lock"
WORKREPOS_DIR_NAME = ".workrepos"
RUNS_DIR = "runs"

PLAN_MARKER = "[PLAN]"
PLAN_LABEL = "plan"
PLAN_STATUS_LABEL_PREFIX = "plan:"
UNASSIGNED_PLACEHOLDER = "(empty if unclaimed)"
DEFAULT_VERIFICATION_ITEMS = (
    "All tasks completed",
    "Tests pass",
    "Integration works",
)

DEFAULT_BASE_BRANCH = "main"
TRUNK_BRANCHES = frozenset({"main", "master", "trunk", "develop"})
BRANCH_SLUG_MAX_CHARS = 40

# Two-phase consensus timings (seconds)
DEFAULT_CONSENSUS_DELAY_SECONDS = 5.0
DEFAULT_CONSENSUS_CONTEST_EXTENSION_SECONDS = 3.0
DEFAULT_CONSENSUS_PROPAGATION_EXTENSION_SECONDS = 5.0
DEFAULT_LOST_WRITE_RETRIES = 1

DEFAULT_TEST_TIMEOUT_SECONDS = 120
DEFAULT_WORKER_TIMEOUT_SECONDS = 600
DEFAULT_WORKER_KILL_GRACE_SECONDS = 5
DEFAULT_WORKER_COMMAND = "claude -p --dangerously-skip-permissions {prompt}"
DEFAULT_TEST_OUTPUT_CHARS = 2000

DEFAULT_MAX_REVIEWERS = 3
DEFAULT_STUCK_TASK_TIMEOUT_SECONDS = 30 * 60
DEFAULT_MAX_TASK_RETRIES = 3

DEFAULT_GITHUB_API_URL = "https://api.github.com"
DEFAULT_GITHUB_TOKEN_ENV = "GITHUB_TOKEN"
DEFAULT_HTTP_TIMEOUT_SECONDS = 30.0

TIMEOUT_EXIT_CODE = 124
COMMAND_NOT_FOUND_EXIT_CODE = 127

# Output fragments that mean the test runner itself is missing, not that tests failed.
TOOLING_ABSENT_MARKERS = (
    "command not found",
    "cannot find module",
    "err_module_not_found",
    "enoent",
    "no module named pytest",
    "no module named 'pytest'",
)

# Worker output fragments that turn a failed run into a blocked report.
BLOCKED_OUTPUT_MARKERS = (
    "blocked",
    "cannot proceed",
    "dependency",
    "missing",
)

QUALITY_REVIEW_CHECKLIST = (
    "Re-read the project docs and make sure they reflect the current architecture",
    "Walk through each acceptance scenario against the merged code",
    "Fix any gaps found during the walkthrough",
    "File new issues for anything left over",
)
