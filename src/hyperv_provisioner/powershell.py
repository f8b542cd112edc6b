"""PowerShell script assembly for host operations.

An operation body reads its inputs from ``$p`` (the argument bag) and
emits its result on the pipeline. The wrapper serialises the bag in and
the result out as JSON, so the body does not care whether it runs in the
local process or over a remote session.
"""

import base64
import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

_PRELUDE = """$ErrorActionPreference = 'Stop'
$ProgressPreference = 'SilentlyContinue'
$p = ConvertFrom-Json -InputObject @'
"""

_BODY_START = """
'@
$__result = & {
"""

_EPILOGUE = """
}
if ($null -ne $__result) { ConvertTo-Json -InputObject $__result -Depth 8 -Compress }
"""


@dataclass(frozen=True)
class Operation:
    """A named PowerShell body run with an explicit argument bag."""

    name: str
    body: str


def build_script(operation: Operation, args: Optional[Dict[str, Any]] = None) -> str:
    """Wrap an operation body with argument deserialisation and JSON output."""
    payload = json.dumps(args or {})
    return _PRELUDE + payload + _BODY_START + operation.body.strip("\n") + _EPILOGUE


def encode_command(script: str) -> str:
    """Encode a script for powershell.exe -EncodedCommand (base64 of UTF-16LE)."""
    return base64.b64encode(script.encode("utf-16-le")).decode("ascii")


def command_line(executable: str, script: str) -> List[str]:
    return [executable, "-NoProfile", "-NonInteractive", "-EncodedCommand", encode_command(script)]


def parse_output(stdout: str) -> Any:
    """Decode the JSON emitted by the wrapper; no output means None."""
    text = stdout.strip()
    if not text:
        return None
    return json.loads(text)


def as_list(value: Any) -> List[Any]:
    """PowerShell unrolls one-element arrays; restore list shape."""
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]
