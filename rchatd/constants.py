# rchat protocol constants (numeric keys and message types)

RCHAT_VERSION = 1

# Envelope keys
K_V = 0
K_T = 1
K_ID = 2
K_TS = 3
K_SRC = 4
K_BODY = 5

# Message types: handshake
T_HELLO = 1
T_WELCOME = 2

# Message types: chat
T_SEND = 10
T_SEND_ACK = 11
T_NEW_MESSAGE = 12
T_ACK = 13
T_REPLAY = 14
T_REPLAY_DONE = 15
# Explicit REPLAY answers; kept apart from the live NEW_MESSAGE stream.
T_HISTORY = 16

# Message types: rooms
T_JOIN_ROOM = 20
T_ROOM_JOINED = 21
T_LEAVE_ROOM = 22
T_ROOM_LEFT = 23

# Message types: presence and typing
T_USER_STATUS = 30
T_TYPING = 31
T_STOP_TYPING = 32
T_USER_TYPING = 33
T_USER_STOPPED_TYPING = 34

T_PING = 40
T_PONG = 41

T_ERROR = 50

# HELLO body keys
B_HELLO_CREDENTIAL = 0
B_HELLO_DEVICE = 1
B_HELLO_CURSORS = 2

# WELCOME body keys
B_WELCOME_HUB = 0
B_WELCOME_VER = 1
B_WELCOME_USER = 2
B_WELCOME_NAME = 3

# Body keys shared by chat, room and typing events.
B_CHAT_TYPE = 0
B_TARGET = 1
B_CONTENT = 2
B_TEMP_ID = 3
B_SEQUENCE = 4
B_AFTER = 5
B_MESSAGE = 6
B_GROUP = 7
B_USER = 8
B_STATUS = 9
B_LAST = 10

# ERROR body keys
B_ERR_CODE = 0
B_ERR_TEXT = 1
B_ERR_TEMP_ID = 2

# Message record keys (inside B_MESSAGE and on disk)
M_ID = 0
M_SENDER = 1
M_CHAT_TYPE = 2
M_TARGET = 3
M_CONTENT = 4
M_SEQUENCE = 5
M_TS = 6

CHAT_PRIVATE = "private"
CHAT_GROUP = "group"
CHAT_TYPES = (CHAT_PRIVATE, CHAT_GROUP)

STATUS_ONLINE = "online"
STATUS_OFFLINE = "offline"

DEFAULT_DEVICE = "default"

USER_ID_MAX_CHARS = 64
