# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vdiskmigrate/core/http.py
"""Shared requests plumbing for the array and catalog REST clients."""
from __future__ import annotations

from typing import Any, Optional

import requests
import requests.adapters
import urllib3

from .exceptions import ConnectivityError, NotFoundError, StorageError, _one_line

DEFAULT_TIMEOUT_S = 30.0


def new_session(*, verify: bool = True, max_retries: int = 3) -> requests.Session:
    session = requests.Session()
    session.verify = verify
    if not verify:
        urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    adapter = requests.adapters.HTTPAdapter(
        pool_connections=4,
        pool_maxsize=16,
        max_retries=max_retries,
        pool_block=False,
    )
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    session.headers.update({"Content-Type": "application/json", "Accept": "application/json"})
    return session


def request(
    session: requests.Session,
    method: str,
    url: str,
    *,
    operation: str,
    target: str,
    timeout: Optional[float] = DEFAULT_TIMEOUT_S,
    **kwargs: Any,
) -> requests.Response:
    """
    One HTTP call with the error taxonomy applied:

    - transport failures -> ConnectivityError
    - 401/403 -> ConnectivityError
    - 404 -> NotFoundError
    - any other status >= 400 -> StorageError carrying status and body
    """
    try:
        resp = session.request(method, url, timeout=timeout, **kwargs)
    except requests.RequestException as e:
        raise ConnectivityError(
            code=61,
            msg=f"{operation} failed for {target}: {e}",
            cause=e,
            context={"operation": operation, "target": target, "url": url},
        )

    if resp.status_code < 400:
        return resp

    body = _one_line(resp.text or "", limit=400)
    ctx = {"operation": operation, "target": target, "status": resp.status_code, "body": body}
    msg = f"{operation} failed for {target}: API error (status {resp.status_code}): {body}"
    if resp.status_code in (401, 403):
        raise ConnectivityError(code=61, msg=msg, context=ctx)
    if resp.status_code == 404:
        raise NotFoundError(code=3, msg=msg, context=ctx)
    raise StorageError(code=60, msg=msg, context=ctx)


def json_or_empty(resp: requests.Response) -> Any:
    if not resp.content:
        return {}
    try:
        return resp.json()
    except ValueError:
        return {}
