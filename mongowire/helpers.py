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

"""Bits and pieces used by the client that don't really fit elsewhere."""

from bson.son import SON

from mongowire.errors import DuplicateKeyError, OperationFailure, WTimeoutError

ASCENDING = 1
DESCENDING = -1

# Server codes for duplicate key errors.
_DUPLICATE_KEY_CODES = (11000, 11001, 12582)


def _check_command_response(response, msg=None, allowable_errors=None):
    """Check the response to a command for errors."""
    if "ok" not in response:
        # Server didn't recognize our message as a command.
        raise OperationFailure(response.get("$err"), response.get("code"), response)

    if not response["ok"]:
        errmsg = response.get("errmsg", "")
        if allowable_errors is not None and errmsg in allowable_errors:
            return

        code = response.get("code")
        if code in _DUPLICATE_KEY_CODES:
            raise DuplicateKeyError(errmsg, code, response)

        msg = msg or "%s"
        raise OperationFailure(msg % errmsg, code, response)


def _check_gle_response(result):
    """Return getlasterror response as a dict, or raise OperationFailure."""
    # Did getlasterror itself fail?
    _check_command_response(result)

    if result.get("wtimeout", False):
        # MongoDB versions before 1.8.0 return the error message in an "errmsg"
        # field. If "errmsg" exists "err" will also exist set to None, so we
        # have to check for "errmsg" first.
        raise WTimeoutError(result.get("errmsg", result.get("err")), result.get("code"), result)

    error_msg = result.get("err")
    if not error_msg:
        return result

    code = result.get("code")
    if code in _DUPLICATE_KEY_CODES:
        raise DuplicateKeyError(error_msg, code, result)
    raise OperationFailure(error_msg, code, result)


def _index_list(key_or_list, direction=None):
    """Helper to generate a list of (key, direction) pairs.

    Takes such a list, or a single key, or a single key and direction.
    """
    if direction is not None:
        return [(key_or_list, direction)]
    else:
        if isinstance(key_or_list, str):
            return [(key_or_list, ASCENDING)]
        elif isinstance(key_or_list, dict):
            return list(key_or_list.items())
        elif not isinstance(key_or_list, (list, tuple)):
            raise TypeError("if no direction is specified, key_or_list must be an instance of list")
        return key_or_list


def _index_document(index_list):
    """Helper to generate an index specifying document.

    Takes a list of (key, direction) pairs.
    """
    if not isinstance(index_list, (list, tuple)):
        raise TypeError("must use a list of (key, direction) pairs, not: " + repr(index_list))
    if not len(index_list):
        raise ValueError("key_or_list must not be the empty list")

    index = SON()
    for key, value in index_list:
        if not isinstance(key, str):
            raise TypeError("first item in each key pair must be a string")
        if not isinstance(value, (str, int, dict)):
            raise TypeError(
                "second item in each key pair must be 1, -1, "
                "'2d', or another valid MongoDB index specifier."
            )
        index[key] = value
    return index


def _gen_index_name(keys):
    """Generate an index name from the set of fields it is over."""
    return "_".join(["%s_%s" % item for item in keys])


def _fields_list_to_dict(fields):
    """Takes a list of field names and returns a matching dictionary.

    ["a", "b"] becomes {"a": 1, "b": 1}
    """
    if isinstance(fields, dict):
        return fields
    as_dict = {}
    for field in fields:
        if not isinstance(field, str):
            raise TypeError("fields must be a list of key names, each an instance of str")
        as_dict[field] = 1
    return as_dict
