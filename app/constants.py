SITE_HOST = "labs.google"
API_HOST = "aisandbox-pa.googleapis.com"
SITE_ORIGIN = f"https://{SITE_HOST}"

FLOW_TOOL_URL = f"{SITE_ORIGIN}/fx/tools/flow"
CREATE_PROJECT_URL = f"{SITE_ORIGIN}/fx/api/trpc/project.createProject"
PROJECT_TOOL_NAME = "PINHOLE"

GENERATE_ENDPOINT_PATTERN = "video:batchAsyncGenerateVideoText"
STATUS_ENDPOINT_URL = f"https://{API_HOST}/v1/video:batchCheckAsyncVideoGenerationStatus"

LOGIN_HOST_MARKER = "accounts.google.com"
PROJECT_PATH_MARKER = "/project/"

PROMPT_INPUT_SELECTOR = "textarea#PINHOLE_TEXT_AREA_ELEMENT_ID"
SUBMIT_ICON_LABEL = "arrow_forward"

STATUS_SUCCESSFUL = "MEDIA_GENERATION_STATUS_SUCCESSFUL"
STATUS_FAILED = "MEDIA_GENERATION_STATUS_FAILED"
STATUS_PENDING = "PENDING"

# Hosts whose requests must carry a bearer token in addition to the site cookie.
BEARER_HOSTS = frozenset({API_HOST})

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)

DEFAULT_CONFIG = {
    "max_concurrent_items": 5,
    "poll_interval_seconds": 5.0,
    "login_timeout_seconds": 300,
    "input_timeout_seconds": 60,
    "poll_timeout_seconds": 0,
    "poll_backoff_max_seconds": 60.0,
    "await_handle_before_submit": False,
    "profile_dir": "browser_profile",
    "headless": False,
    "type_delay_ms": 10,
}

MAX_CONCURRENT_LIMIT = 32
