"""Shared constants for the mesh shell provisioner."""

import re

# Line terminator expected by the Zephyr shell on the gateway UART
LINE_TERMINATOR = "\r\n"

# Shell prompt printed after every command completes
PROMPT = "uart:~$"
ANSI_RE = re.compile(r'\x1b\[[0-9;]*[A-Za-z]')

# Addresses
LOCAL_ADDRESS = 0x0001        # Provisioner's own unicast (mesh prov local 0 0x0001)
FIRST_NODE_ADDRESS = 0x0002   # First address handed out to commissioned nodes
MAX_UNICAST = 0x7FFF
GROUP_ADDRESS = 0xC000        # Default group used by the OnOff models

# Key indices
NET_IDX = 0
APP_IDX = 0

# Models bound to every commissioned node
ONOFF_SRV_MODEL = 0x1000
ONOFF_CLI_MODEL = 0x1001
BIND_MODELS = (ONOFF_SRV_MODEL, ONOFF_CLI_MODEL)

# Attention/link timeout passed to the remote provisioning command (seconds)
PROV_TIMEOUT_S = 5

# Local UUID given to the provisioner during init
LOCAL_UUID = "deadbeaf"

# ---- Command templates ----
CMD_BEACON_LISTEN = "mesh prov beacon-listen on"
CMD_PROVISION = "mesh prov remote-adv {uuid} {net_idx} {addr} {timeout}"
CMD_TARGET = "mesh target dst {addr}"
CMD_APPKEY_ADD = "mesh models cfg appkey add {net_idx} {app_idx}"
CMD_APP_BIND = "mesh models cfg model app-bind {addr} {app_idx} {model}"
CMD_LEDS = "leds {value}"
CMD_SENDTO = "sendto {addr} {text}"
CMD_SUB_ADD = "mod_sub_add {node} {elem} {group} {model}"
CMD_SUB_DEL = "mod_sub_del {node} {elem} {group} {model}"

INIT_COMMANDS = [
    "mesh init",
    "mesh reset-local",
    f"mesh prov uuid {LOCAL_UUID}",
    "mesh cdb create",
    f"mesh prov local {NET_IDX} 0x{LOCAL_ADDRESS:04x}",
    f"mesh cdb app-key-add {NET_IDX} {APP_IDX}",
]

# sendto payload limit on the gateway side (char message[128])
SENDTO_MAX_LEN = 127

# ---- Response shapes ----
# Beacon report: marker followed by a 32 hex character device UUID
BEACON_RE = re.compile(
    r'(?:PB-ADV UUID|PB-GATT UUID|UUID:)[\s:]*([0-9A-Fa-f]{32})(?![0-9A-Fa-f])')
# Address report: 0x + 1..4 hex digits
ADDRESS_RE = re.compile(r'0x[0-9A-Fa-f]{1,4}(?![0-9A-Fa-f])')
# Provisioning acknowledgement (only used by the acknowledged step policy)
PROVISIONED_RE = re.compile(r'Provisioning complete|\b[Pp]rovisioned\b')

# Baud rate of the gateway UART
DEFAULT_BAUD = 115200
