# chatd protocol constants (event names, message classes, store keys)

WIRE_VERSION = 1

# Envelope keys
K_V = "v"
K_EVENT = "event"
K_ROOM = "room"
K_BODY = "body"
K_TS = "ts"

# Inbound events (client -> hub)
E_SUBSCRIBE = "subscribe"
E_JOIN_PRIVATE = "join_private"
E_MAKE_PUBLIC = "make_public"
E_MAKE_PRIVATE = "make_private"
E_NICKNAME = "nickname"
E_TOPIC = "topic"
E_HISTORY_REQUEST = "history_request"
E_IDLE = "idle"
E_UNIDLE = "unidle"
E_PRIVATE_MESSAGE = "private_message"
E_CHAT = "chat"
E_IDENTIFY = "identify"
E_REGISTER_NICK = "register_nick"
E_UNSUBSCRIBE = "unsubscribe"

# Outbound events (hub -> client)
O_CHAT = "chat"
O_TOPIC = "topic"
O_CURRENT_ID = "chat:currentID"
O_YOUR_CID = "chat:your_cid"
O_USERLIST = "userlist"
O_IDLE = "chat:idle"
O_UNIDLE = "chat:unidle"
O_PRIVATE_MESSAGE = "private_message"
O_PRIVATE = "private"
O_ACK = "ack"

# Message type / class tags
TYPE_SYSTEM = "SYSTEM"
TYPE_PRIVATE = "private"
CLASS_IDENTITY = "identity"
CLASS_PRIVATE = "private"
CLASS_JOIN = "join"
CLASS_PART = "part"

# Channel visibility
VISIBILITY_PUBLIC = "public"
VISIBILITY_PRIVATE = "private"

# Store keys
SK_CURRENT_ID = "channels:currentMessageID"
SK_CHATLOG = "chatlog:"
SK_TOPIC = "topic"
SK_USERS = "users:"
SK_SALTS = "salts:"
SK_PASSWORDS = "passwords:"
# Short-lived claim held while a nickname registration is in flight.
SK_REGISTERING = "registering:"

# Admission failure texts the coordinator reacts to
INCORRECT_PASSWORD = "Incorrect password."

NICK_MAX_CHARS = 32
