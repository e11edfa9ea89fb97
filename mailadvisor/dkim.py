# -*- coding: utf-8 -*-
"""DKIM record advice"""

from __future__ import annotations

from mailadvisor._constants import GUIDE_URL

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

DKIM_MISSING = (
    "We couldn't detect any active DKIM record for your domain. Due to how "
    "DKIM works, we only lookup common/known DKIM selectors (such as x, "
    f"selector1, google). Visit {GUIDE_URL} for more info on how to "
    "configure DKIM for your domain."
)
DKIM_MALFORMED = (
    "Your DKIM record appears to be malformed as no semicolons seem to be "
    "present."
)
DKIM_BAD_VERSION = (
    "The beginning of your DKIM record should be v=DKIM1 with specific "
    "capitalization."
)
DKIM_BAD_ALGORITHM = (
    "The second tag in your DKIM record must be k=rsa or a=rsa-sha256."
)
DKIM_MISSING_KEY = "The third tag in your DKIM record must be p=YOUR_KEY."
DKIM_OK = (
    "DKIM is setup for this email server. However, if you have other 3rd "
    "party systems, please send a test email to confirm DKIM is setup "
    "properly."
)


def check_dkim(record: str) -> list[str]:
    """
    Returns advice for a DKIM key record

    The first three tags are checked by position; any later tags are ignored.

    Args:
        record (str): A DKIM record found under a known selector, or an
                      empty string if none of them answered

    Returns:
        list: A list of advice strings
    """
    if not record:
        return [DKIM_MISSING]
    if ";" not in record:
        return [DKIM_MALFORMED]

    advice = []
    for index, tag in enumerate(record.split(";")[:3]):
        tag = tag.strip()
        if index == 0 and "v=DKIM1" not in tag:
            advice.append(DKIM_BAD_VERSION)
        elif index == 1 and "k=rsa" not in tag and "a=rsa-sha256" not in tag:
            advice.append(DKIM_BAD_ALGORITHM)
        elif index == 2 and "p=" not in tag:
            advice.append(DKIM_MISSING_KEY)

    if len(advice) == 0:
        return [DKIM_OK]
    return advice
