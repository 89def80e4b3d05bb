# Copyright 2024-present MongoDB, Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
# http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.


"""Functions and classes common to multiple mongowire modules."""
import re
from typing import Any, List, Tuple

from mongowire.errors import ConfigurationError

# Defaults until we connect to a server and get updated limits.
MAX_MESSAGE_SIZE = 2 * 16 * 1024 * 1024

# The well known mongod port.
DEFAULT_PORT = 27017

# Request ids 0, 1 and 2 are never issued by a connection.
MIN_REQUEST_ID = 3
MAX_REQUEST_ID = 99999999

# Lowest SCRAM iteration count the client accepts from a server.
MIN_SCRAM_ITERATIONS = 4096

# Default number of documents requested per cursor batch.
DEFAULT_BATCH_SIZE = 100

# Default socket read timeout, in seconds.
SOCKET_TIMEOUT = 30.0

# Default acknowledgement settings for getLastError.
GLE_W = 1
GLE_J = False
GLE_WTIMEOUT = 10000

# Pool defaults.
MIN_POOL_SIZE = 1
MAX_POOL_SIZE = 20
CONNECT_TIMEOUT = 1.0
WAIT_QUEUE_TIMEOUT = 3.0
HEARTBEAT_FREQUENCY = -1
MAX_IDLE_TIME_SEC = 60

_HOST_RE = re.compile(r"\A(?P<host>[a-zA-Z0-9_.\-]+)(?::(?P<port>[0-9]+))?\Z")


def parse_host(entity: str, default_port: int = DEFAULT_PORT) -> Tuple[str, int]:
    """Validates a host string

    Returns a 2-tuple of host followed by port where port is default_port
    if it wasn't specified in the string.

    :Parameters:
        - `entity`: A host or host:port string where host is a host name
          or an IPv4 address.
        - `default_port`: The port number to use when one wasn't
          specified in entity.
    """
    if not isinstance(entity, str):
        raise ConfigurationError("Host must be a string, not %r" % (entity,))
    match = _HOST_RE.match(entity.strip())
    if match is None:
        raise ConfigurationError("Malformed host string %r" % (entity,))
    port = match.group("port")
    if port is None:
        port = default_port
    else:
        port = int(port)
    if not 0 < port < 65536:
        raise ConfigurationError("Port must be an integer between 1 and 65535: %r" % (entity,))
    return match.group("host").lower(), port


def split_hosts(hosts: str, default_port: int = DEFAULT_PORT) -> List[Tuple[str, int]]:
    """Takes a string of the form host1[:port],host2[:port]... and
    splits it into (host, port) tuples. If [:port] isn't present the
    default_port is used.

    Returns a list of 2-tuples containing the host name and port number.
    """
    nodes = []
    for entity in hosts.split(","):
        if not entity:
            raise ConfigurationError("Empty host (or extra comma in host list).")
        nodes.append(parse_host(entity, default_port))
    if not nodes:
        raise ConfigurationError("Need to specify at least one host")
    return nodes


def validate_integer(option: str, value: Any) -> int:
    """Validates that 'value' is an integer (or basestring representation)."""
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    elif isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            raise ConfigurationError("The value of %s must be an integer" % (option,))
    raise TypeError("Wrong type for %s, value must be an integer" % (option,))


def validate_positive_integer(option: str, value: Any) -> int:
    """Validate that 'value' is a positive integer, which does not include 0."""
    val = validate_integer(option, value)
    if val <= 0:
        raise ConfigurationError("The value of %s must be a positive integer" % (option,))
    return val


def validate_non_negative_integer(option: str, value: Any) -> int:
    """Validate that 'value' is a positive integer or 0."""
    val = validate_integer(option, value)
    if val < 0:
        raise ConfigurationError("The value of %s must be a non negative integer" % (option,))
    return val


def validate_string(option: str, value: Any) -> str:
    """Validates that 'value' is an instance of `str`."""
    if isinstance(value, str):
        return value
    raise TypeError("Wrong type for %s, value must be an instance of str" % (option,))


def validate_positive_float(option: str, value: Any) -> float:
    """Validates that 'value' is a float, or can be converted to one, and is
    positive.
    """
    errmsg = "%s must be an integer or float" % (option,)
    try:
        value = float(value)
    except ValueError:
        raise ConfigurationError(errmsg)
    except TypeError:
        raise TypeError(errmsg)

    # Cap at one billion; a reasonable approximation for infinity.
    if not 0 < value < 1e9:
        raise ConfigurationError("%s must be greater than 0 and less than one billion" % (option,))
    return value


def validate_heartbeat(option: str, value: Any) -> float:
    """Validates a heartbeat frequency in seconds. Zero or negative disables it."""
    try:
        return float(value)
    except (ValueError, TypeError):
        raise ConfigurationError("%s must be an integer or float" % (option,))
