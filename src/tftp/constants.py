from __future__ import annotations

RRQ = 1
WRQ = 2
DATA = 3
ACK = 4
ERROR = 5

OPCODE_FORMAT = "!H"
BLOCK_FORMAT = "!HH"  # opcode, block number
HEADER_LEN = 4

BLOCK_SIZE = 512
MAX_PACKET = HEADER_LEN + BLOCK_SIZE
MAX_BLOCK = 0xFFFF

DEFAULT_PORT = 1234
DEFAULT_TIMEOUT_S = 5.0
DEFAULT_MAX_RETRIES = 5
LISTEN_POLL_S = 0.5
DALLY_TIMEOUTS = 2  # timeout periods a receiver lingers after its final ACK
RECENT_RESULTS = 64  # finished transfers a server remembers
