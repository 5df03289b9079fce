# SPDX-License-Identifier: LGPL-3.0-or-later
from .ssh_client import SSHClient, SSHResult
from .ssh_config import SSHConfig

__all__ = ["SSHClient", "SSHConfig", "SSHResult"]
