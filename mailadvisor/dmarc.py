# -*- coding: utf-8 -*-
"""DMARC record advice"""

from __future__ import annotations

import logging
import re
from typing import NamedTuple, TypedDict

from mailadvisor.utils import validate_email

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

DMARC_MISSING = "You do not have DMARC setup!"
DMARC_MALFORMED = (
    "Your DMARC record appears to be malformed as no semicolons seem to be "
    "present."
)
DMARC_BAD_VERSION = (
    "The beginning of your DMARC record should be v=DMARC1 with specific "
    "capitalization."
)
DMARC_POLICY_POSITION = (
    "The second tag in your DMARC record must be "
    "p=none/p=quarantine/p=reject."
)
DMARC_INVALID_POLICY = (
    "Invalid DMARC policy specified, the record must be "
    "p=none/p=quarantine/p=reject."
)
DMARC_INVALID_SUBDOMAIN_POLICY = (
    "Invalid subdomain policy specified, the record must be "
    "sp=none/sp=quarantine/sp=reject."
)
DMARC_INVALID_PERCENTAGE = (
    "Invalid report percentage specified, it must be between 0 and 100."
)
DMARC_RUA_MISSING_MAILTO = (
    "Invalid aggregate report destination specified, it should begin with "
    "mailto:."
)
DMARC_RUA_INVALID_EMAIL = (
    "Invalid aggregate report destination specified, it should be a valid "
    "email address."
)
DMARC_RUF_MISSING_MAILTO = (
    "Invalid forensic report destination specified, it should begin with "
    "mailto:."
)
DMARC_RUF_INVALID_EMAIL = (
    "Invalid forensic report destination specified, it should be a valid "
    "email address."
)
DMARC_INVALID_FAILURE_OPTIONS = (
    "Invalid failure options specified, the record must be "
    "fo=0/fo=1/fo=d/fo=s."
)
DMARC_INVALID_INTERVAL = (
    "Invalid report interval specified, it must be a positive integer."
)
DMARC_NEGATIVE_INTERVAL = (
    "Invalid report interval specified, it must be a positive value."
)
DMARC_CONSIDER_RUA = "Consider specifying a 'rua' tag for aggregate reporting."
DMARC_CONSIDER_FO = (
    "Consider specifying an 'fo' tag to define the condition for generating "
    "failure reports. Default is '0' (report if both SPF and DKIM fail)."
)
DMARC_CONSIDER_RUF = "Consider specifying a 'ruf' tag for forensic reporting."
DMARC_CONSIDER_SP = (
    "Subdomain policy isn't specified, they'll default to the main policy "
    "instead."
)

# (policy, rua present) -> advice
DMARC_POLICY_ADVICE = {
    ("quarantine", True): (
        "You are currently at the second level and receiving reports. Please "
        "make sure to review the reports, make the appropriate adjustments, "
        "and move to reject soon."
    ),
    ("quarantine", False): (
        "You are currently at the second level. However, you must receive "
        "reports in order to determine if DKIM/DMARC/SPF are functioning "
        "correctly and move to the highest level (reject). Please add the "
        "‘rua’ tag to your DMARC policy."
    ),
    ("none", True): (
        "You are currently at the lowest level and receiving reports, which "
        "is a great starting point. Please make sure to review the reports, "
        "make the appropriate adjustments, and move to either quarantine or "
        "reject soon."
    ),
    ("none", False): (
        "You are currently at the lowest level, which is a great starting "
        "point. However, you must receive reports in order to determine if "
        "DKIM/DMARC/SPF are functioning correctly. Please add the ‘rua’ tag "
        "to your DMARC policy."
    ),
    ("reject", True): (
        "You are at the highest level! Please make sure to continue reviewing "
        "the reports and make the appropriate adjustments, if needed."
    ),
    ("reject", False): (
        "You are at the highest level! However, we do recommend keeping "
        "reports enabled (via the rua tag) in case any issues may arise and "
        "you can review reports to see if DMARC is the cause."
    ),
}

DMARC_POLICIES = ("none", "quarantine", "reject")
DMARC_FAILURE_OPTIONS = ("0", "1", "d", "s")

# ASCII digits only, with no whitespace or underscores
INTEGER_REGEX = re.compile(r"[+-]?[0-9]+")


class DMARCTag(NamedTuple):
    index: int
    key: str
    value: str


class DMARCFields(TypedDict):
    version: str
    policy: str
    subdomain_policy: str
    percentage: int
    aggregate_report_destinations: list[str]
    forensic_report_destinations: list[str]
    failure_options: str
    aspf: str
    adkim: str
    report_interval: int
    advice: list[str]


def _parse_int(value: str) -> tuple[int, bool]:
    """Returns the parsed integer, or 0 and False when it can't be parsed"""
    if INTEGER_REGEX.fullmatch(value) is None:
        return 0, False
    return int(value), True


def parse_dmarc_tags(record: str) -> list[DMARCTag]:
    """
    Splits a DMARC record into tags, keeping the position of each tag

    Parts without an = are skipped, but still count towards the
    position of the tags after them.

    Args:
        record (str): A raw DMARC record

    Returns:
        list: An ordered list of DMARCTag tuples
    """
    tags = []
    for index, part in enumerate(record.split(";")):
        key, separator, value = part.strip().partition("=")
        if not separator:
            continue
        tags.append(DMARCTag(index, key, value))
    return tags


def _check_destinations(
    fields: DMARCFields,
    destinations: list[str],
    missing_mailto: str,
    invalid_email: str,
    *,
    skip_email_check: bool = False,
):
    for destination in destinations:
        if not destination.startswith("mailto:"):
            fields["advice"].append(missing_mailto)
            if skip_email_check:
                continue
        if not validate_email(destination.removeprefix("mailto:")):
            fields["advice"].append(invalid_email)


def check_dmarc(record: str) -> list[str]:
    """
    Returns advice for a DMARC record

    Tags are validated in record order, so advice appears in the same order
    as the tags that caused it. Reminders about missing optional tags are
    always appended last.

    Args:
        record (str): A raw DMARC record, or an empty string if there isn't one

    Returns:
        list: A list of advice strings
    """
    if not record:
        return [DMARC_MISSING]
    if ";" not in record:
        return [DMARC_MALFORMED]

    logging.debug("Checking the DMARC record")
    fields: DMARCFields = {
        "version": "",
        "policy": "",
        "subdomain_policy": "",
        "percentage": 0,
        "aggregate_report_destinations": [],
        "forensic_report_destinations": [],
        "failure_options": "",
        "aspf": "",
        "adkim": "",
        "report_interval": 0,
        "advice": [],
    }
    advice = fields["advice"]
    rua_exists = "rua=" in record

    for tag in parse_dmarc_tags(record):
        value = tag.value
        if tag.key == "v":
            if tag.index != 0 or value != "DMARC1":
                advice.append(DMARC_BAD_VERSION)
            fields["version"] = value
        elif tag.key == "p":
            if tag.index != 1:
                advice.append(DMARC_POLICY_POSITION)
            fields["policy"] = value
            if value in DMARC_POLICIES:
                advice.append(DMARC_POLICY_ADVICE[(value, rua_exists)])
            else:
                advice.append(DMARC_INVALID_POLICY)
        elif tag.key == "sp":
            fields["subdomain_policy"] = value
            if value not in DMARC_POLICIES:
                advice.append(DMARC_INVALID_SUBDOMAIN_POLICY)
        elif tag.key == "pct":
            percentage, parsed = _parse_int(value)
            if not parsed or percentage < 0 or percentage > 100:
                advice.append(DMARC_INVALID_PERCENTAGE)
            fields["percentage"] = percentage
        elif tag.key == "rua":
            fields["aggregate_report_destinations"] = value.split(",")
            _check_destinations(
                fields,
                fields["aggregate_report_destinations"],
                DMARC_RUA_MISSING_MAILTO,
                DMARC_RUA_INVALID_EMAIL,
            )
        elif tag.key == "ruf":
            fields["forensic_report_destinations"] = value.split(",")
            _check_destinations(
                fields,
                fields["forensic_report_destinations"],
                DMARC_RUF_MISSING_MAILTO,
                DMARC_RUF_INVALID_EMAIL,
                skip_email_check=True,
            )
        elif tag.key == "fo":
            fields["failure_options"] = value
            if value not in DMARC_FAILURE_OPTIONS:
                advice.append(DMARC_INVALID_FAILURE_OPTIONS)
        elif tag.key == "aspf":
            fields["aspf"] = value
        elif tag.key == "adkim":
            fields["adkim"] = value
        elif tag.key == "ri":
            interval, parsed = _parse_int(value)
            if not parsed:
                advice.append(DMARC_INVALID_INTERVAL)
            # An unparsable value is 0 here, so only one of these can fire
            if interval < 0:
                advice.append(DMARC_NEGATIVE_INTERVAL)
            fields["report_interval"] = interval

    if len(fields["aggregate_report_destinations"]) == 0:
        advice.append(DMARC_CONSIDER_RUA)
    if fields["failure_options"] == "":
        advice.append(DMARC_CONSIDER_FO)
    if len(fields["forensic_report_destinations"]) == 0:
        advice.append(DMARC_CONSIDER_RUF)
    if fields["subdomain_policy"] == "":
        advice.append(DMARC_CONSIDER_SP)

    return advice
