# chatrelay wire protocol constants

DEFAULT_DISPLAY_NAME = "Anonymous"
DEFAULT_PORT = 5000
DEFAULT_HOST = "0.0.0.0"

# Line framing
LINE_SEPARATOR = "\n"
LINE_ENCODING = "utf-8"

# Client commands
CMD_NAME = "/name"
CMD_QUIT = "/quit"

# Nickname policy
NAME_MAX_CHARS = 32

# Accept loop polling interval; bounds how long stop() waits on accept().
ACCEPT_POLL_S = 0.5

# Relayed chat text goes here, apart from session lifecycle logging.
ROOM_LOGGER = "chatrelay.room"
