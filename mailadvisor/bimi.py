# -*- coding: utf-8 -*-
"""BIMI record advice"""

from __future__ import annotations

import logging
from typing import Optional

import requests

from mailadvisor._constants import (
    BIMI_MAX_LOGO_SIZE,
    DEFAULT_HTTP_TIMEOUT,
    GUIDE_URL,
    USER_AGENT,
)

"""Copyright 2019-2023 Sean Whalen

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at

   https://www.apache.org/licenses/LICENSE-2.0

Unless required by applicable law or agreed to in writing, software
distributed under the License is distributed on an "AS IS" BASIS,
WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
See the License for the specific language governing permissions and
limitations under the License."""

BIMI_MISSING = (
    "We couldn't detect any active BIMI record for your domain. "
    f"Please visit {GUIDE_URL} to fix this."
)
BIMI_MALFORMED = (
    "Your BIMI record appears to be malformed as no semicolons seem to be "
    "present."
)
BIMI_ISSUES = "Your BIMI record has some issues:"
BIMI_BAD_VERSION = (
    "The beginning of your BIMI record should be v=BIMI1 with specific "
    "capitalization."
)
BIMI_LOGO_UNAVAILABLE = "Your SVG logo could not be downloaded."
BIMI_LOGO_TOO_LARGE = (
    f"Your SVG logo exceeds the maximum of {BIMI_MAX_LOGO_SIZE // 1024}KB."
)
BIMI_VMC_UNAVAILABLE = "Your VMC certificate could not be downloaded."
BIMI_LOGO_MISSING = "Your BIMI record is missing the SVG logo URL."
BIMI_VMC_MISSING = "Your BIMI record is missing the VMC cert URL."
BIMI_OK = "Your BIMI record looks good! No further action needed."


def _head(
    session: requests.Session, url: str, timeout: float
) -> Optional[requests.Response]:
    """Returns the response to a HEAD request, or None if it failed"""
    logging.debug(f"Sending a HEAD request to {url}")
    try:
        return session.head(url, timeout=timeout, allow_redirects=True)
    except requests.exceptions.RequestException as e:
        logging.debug(f"HEAD request to {url} failed: {e}")
        return None


def _content_length(response: requests.Response) -> int:
    try:
        return int(response.headers.get("Content-Length", -1))
    except ValueError:
        return -1


def _check_tags(
    record: str, session: requests.Session, timeout: float
) -> list[str]:
    advice = []
    logo_found = False
    vmc_found = False
    for index, tag in enumerate(record.split(";")):
        tag = tag.strip()
        if index == 0 and "v=BIMI1" not in tag:
            advice.append(BIMI_BAD_VERSION)

        if "l=" in tag:
            logo_found = True
            response = _head(session, tag.removeprefix("l="), timeout)
            if response is None or response.status_code != 200:
                advice.append(BIMI_LOGO_UNAVAILABLE)
                continue
            if _content_length(response) > BIMI_MAX_LOGO_SIZE:
                advice.append(BIMI_LOGO_TOO_LARGE)

        if "a=" in tag:
            vmc_found = True
            response = _head(session, tag.removeprefix("a="), timeout)
            if response is None or response.status_code != 200:
                advice.append(BIMI_VMC_UNAVAILABLE)

    if not logo_found:
        advice.append(BIMI_LOGO_MISSING)
    if not vmc_found:
        advice.append(BIMI_VMC_MISSING)
    return advice


def check_bimi(
    record: str,
    *,
    session: Optional[requests.Session] = None,
    timeout: float = DEFAULT_HTTP_TIMEOUT,
) -> list[str]:
    """
    Returns advice for a BIMI record

    The SVG logo (``l=``) and VMC certificate (``a=``) URLs are checked
    with HEAD requests. Only reachability and the advertised logo size are
    checked; the contents are never downloaded or verified.

    Args:
        record (str): A raw BIMI record, or an empty string if there isn't one
        session (requests.Session): A session to send the HEAD requests with.
                                    When omitted, a new session is opened and
                                    closed for this call.
        timeout (float): Number of seconds to wait for each HTTP response

    Returns:
        list: A list of advice strings. When there are problems, the first
        item is a heading line.
    """
    if not record:
        return [BIMI_MISSING]
    if ";" not in record:
        return [BIMI_MALFORMED]

    logging.debug("Checking the BIMI record")
    if session is None:
        with requests.Session() as session:
            session.headers = {"User-Agent": USER_AGENT}
            advice = _check_tags(record, session, timeout)
    else:
        advice = _check_tags(record, session, timeout)

    if len(advice) == 0:
        return [BIMI_OK]
    return [BIMI_ISSUES] + advice
