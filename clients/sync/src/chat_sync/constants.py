"""Protocol names and tuning defaults shared by the engine and the gateway."""

PROTOCOL_VERSION = 1

EVENT_AUTHENTICATE = "authenticate"
EVENT_AUTHENTICATED = "authenticated"
EVENT_AUTHENTICATION_ERROR = "authentication_error"
EVENT_JOIN_CHAT = "join_chat"
EVENT_LEAVE_CHAT = "leave_chat"
EVENT_SEND_MESSAGE = "send_message"
EVENT_NEW_MESSAGE = "new_message"
EVENT_MARK_MESSAGE_READ = "mark_message_read"
EVENT_MESSAGE_READ = "message_read"
EVENT_TYPING_START = "typing_start"
EVENT_TYPING_STOP = "typing_stop"
EVENT_USER_TYPING = "user_typing"
EVENT_USER_STOPPED_TYPING = "user_stopped_typing"
EVENT_USER_ONLINE = "user_online"
EVENT_USER_OFFLINE = "user_offline"
EVENT_PING = "ping"
EVENT_PONG = "pong"
EVENT_ERROR = "error"

DEFAULT_MAX_RECONNECT_ATTEMPTS = 5
DEFAULT_RECONNECT_BASE_DELAY_S = 1.0
DEFAULT_RECONNECT_MAX_DELAY_S = 30.0
DEFAULT_HEARTBEAT_INTERVAL_S = 25.0
DEFAULT_HEARTBEAT_TIMEOUT_S = 60.0
DEFAULT_CONNECT_TIMEOUT_S = 20.0

DEFAULT_MATCH_WINDOW_MS = 10_000
DEFAULT_DUPLICATE_WINDOW_MS = 1_000
DEFAULT_RESEND_GRACE_MS = 2_000
DEFAULT_CONFIRM_TIMEOUT_MS = 10_000

DEFAULT_TYPING_WINDOW_S = 3.0
DEFAULT_TYPING_GRACE_S = 0.5
DEFAULT_SWEEP_INTERVAL_S = 1.0

DEFAULT_HISTORY_PAGE_SIZE = 50
DEFAULT_LOG_LEVEL = "INFO"

MAX_MESSAGE_LENGTH = 2000
MAX_GROUP_NAME_LENGTH = 100
MAX_GROUP_DESCRIPTION_LENGTH = 500
DEFAULT_MAX_PARTICIPANTS = 256

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{extra[component]}</cyan> | "
    "{message}"
)
