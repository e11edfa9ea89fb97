# -*- coding: utf-8 -*-
"""SPF record advice"""

from __future__ import annotations

import logging

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

SPF_MISSING = (
    "We couldn't detect any active SPF record for your domain. "
    f"Please visit {GUIDE_URL} to fix this."
)
SPF_PLUS_ALL = (
    "Your SPF record contains the +all tag. It is strongly recommended "
    "that this be changed to either -all or ~all. The +all tag allows for "
    "any system regardless of SPF to send mail on the organization’s behalf."
)
SPF_MISSING_ALL = (
    "Your SPF record is missing the all tag. "
    f"Please visit {GUIDE_URL} to fix this."
)
SPF_OK = "SPF seems to be setup correctly! No further action needed."


def check_spf(record: str) -> list[str]:
    """
    Returns advice for an SPF record

    Only one line of advice is ever returned; the first matching rule wins.

    Args:
        record (str): A raw SPF record, or an empty string if there isn't one

    Returns:
        list: A list containing a single advice string
    """
    if not record:
        return [SPF_MISSING]
    logging.debug("Checking the SPF record")
    if "all" not in record:
        return [SPF_MISSING_ALL]
    if "+all" in record:
        return [SPF_PLUS_ALL]
    return [SPF_OK]
