# Hard cap for a single rendered field, in UTF-8 bytes.
MAX_RESPONSE_TEXT_BYTES = 1024

# https://stackoverflow.com/a/417184/2557927
SAFE_URL_LENGTH = 2048

MAX_URL_COUNTS_PER_MESSAGE = 10

# Matrix mentions render as <a href="https://matrix.to/#/@user:server">, never a page.
MENTION_LINK_DOMAIN = "matrix.to"

# A Matrix event is at most 64 KiB, so a message body never gets near this.
MAX_DOM_NODES = 1 << 20
