# Hub protocol constants (numeric keys and message types)

PAIRCHAT_PROTO_VERSION = 1

# Envelope keys
K_V = 0
K_T = 1
K_ID = 2
K_TS = 3
K_SESSION = 4
K_BODY = 5

# Message types
T_SUBSCRIBE = 10
T_UNSUBSCRIBE = 11

T_PUBLISH = 20
T_ACK = 21
T_ENTRY = 22

T_PING = 30
T_PONG = 31

T_ERROR = 40

# SUBSCRIBE body keys
B_SUB_SINCE = 0

# PUBLISH body keys
B_PUB_SENDER = 0
B_PUB_CONTENT = 1

# ENTRY body keys. TS is the hub arrival time, not the sender's clock.
B_ENTRY_SEQ = 0
B_ENTRY_SENDER = 1
B_ENTRY_CONTENT = 2
B_ENTRY_TS = 3

# Invitation token wire fields (JSON)
TOKEN_SESSION_ID = "sessionId"
TOKEN_USER_NAME = "userName"
TOKEN_SERVER_URL = "serverUrl"
TOKEN_TIMESTAMP = "timestamp"

TOKEN_VALIDITY_MS = 60 * 60 * 1000

SESSION_ID_BYTES = 16

NAME_MAX_CHARS = 32
