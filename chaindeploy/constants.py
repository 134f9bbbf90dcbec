from pathlib import Path

import chaindeploy

#
# Filesystem
#

DEPLOYMENT_DIR = Path(chaindeploy.__file__).parent
PIPELINES_DIR = DEPLOYMENT_DIR / "pipelines"
DEFAULT_RECORD_FILEPATH = Path("deploy.json")

PENDING_JOURNAL_SUFFIX = ".pending.json"
# journal keys of completed upgrades: "<step key>@<contract type>#completed"
COMPLETED_KEY_SUFFIX = "#completed"
LOCK_SUFFIX = ".lock"

#
# Record keys
#

# proxied contracts are recorded under their name (proxy address)
# and under "<name>#logic" (implementation address)
LOGIC_NAME_SUFFIX = "#logic"

# keys of the legacy nested deploy.json layout
LEGACY_PROXY_KEY = "proxy"
LEGACY_LOGIC_KEY = "logic"

#
# Contracts
#

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
EMPTY_BYTES32 = b"\x00" * 32

# EIP1967 Implementation slot - https://eips.ethereum.org/EIPS/eip-1967#logic-contract-address
EIP1967_IMPLEMENTATION_SLOT = 0x360894A13BA1A3210667C828492DB98DCA3E2076CC3735A920A3CA505D382BBC

# EIP1967 Admin slot - https://eips.ethereum.org/EIPS/eip-1967#admin-address
EIP1967_ADMIN_SLOT = 0xB53127684A568B3173AE13B9F8A6016E243E63B6E8EE1178D6A717850B5D6103

PROXY_ADMIN_CONTRACT = "ProxyAdmin"

#
# Privileges
#

OPERATOR_PRIVILEGE = "operator"
ROLE_SUFFIX = "_ROLE"
DEFAULT_ADMIN_ROLE = b"\x00" * 32

#
# Confirmation
#

DEFAULT_POLL_INTERVAL = 2.0  # seconds
