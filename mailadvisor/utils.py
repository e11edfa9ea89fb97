# -*- coding: utf-8 -*-
"""Domain, address and DNS utility functions"""

from __future__ import annotations

import logging
import re
import unicodedata
from typing import Optional, TypedDict
from collections.abc import Sequence

import dns.exception
import dns.resolver
from dns.nameserver import Nameserver
from expiringdict import ExpiringDict

from mailadvisor._constants import (
    CONSUMER_DOMAINS,
    DNS_CACHE_MAX_AGE_SECONDS,
    DNS_CACHE_MAX_LEN,
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

DNS_CACHE = ExpiringDict(
    max_len=DNS_CACHE_MAX_LEN, max_age_seconds=DNS_CACHE_MAX_AGE_SECONDS
)

EMAIL_REGEX_STRING = (
    r"[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+"
    r"@[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?"
    r"(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)*"
)
EMAIL_REGEX = re.compile(EMAIL_REGEX_STRING)
ZERO_WIDTH_RE = re.compile(r"[\u200B-\u200D\uFEFF]")  # includes ZWSP, ZWNJ, ZWJ, BOM


class MXHost(TypedDict):
    hostname: str
    preference: int


class DNSException(Exception):
    """Raised when a general DNS error occurs"""

    def __init__(self, error):
        if isinstance(error, dns.exception.Timeout):
            error.kwargs["timeout"] = round(error.kwargs["timeout"], 1)
        Exception.__init__(self, str(error))


class DNSExceptionNXDOMAIN(DNSException):
    """Raised when a NXDOMAIN DNS error (RCODE:3) occurs"""


def normalize_domain(domain: str) -> str:
    """
    Normalize an input domain by removing zero-width characters and lowering it

    Args:
        domain (str): A domain or subdomain

    Returns:
        str: A normalized domain
    """
    domain = unicodedata.normalize("NFC", domain)
    domain = ZERO_WIDTH_RE.sub("", domain)
    return domain.lower()


def strip_trailing_dot(hostname: str) -> str:
    """Removes the DNS root dot from the end of a hostname, if present"""
    if hostname.endswith("."):
        return hostname[:-1]
    return hostname


def validate_email(email: str) -> bool:
    """
    Checks the shape of an email address

    .. note::
        No DNS or mailbox checks are made

    Args:
        email (str): An email address, without a ``mailto:`` prefix

    Returns:
        bool: ``True`` if the address is between 3 and 254 characters and
        looks like ``local-part@domain``
    """
    if len(email) < 3 or len(email) > 254:
        return False
    return EMAIL_REGEX.fullmatch(email) is not None


def is_consumer_domain(domain: str) -> bool:
    """Returns ``True`` if the domain belongs to a consumer mail provider"""
    return normalize_domain(strip_trailing_dot(domain)) in CONSUMER_DOMAINS


def query_dns(
    domain: str,
    record_type: str,
    *,
    nameservers: Optional[Sequence[str | Nameserver]] = None,
    resolver: Optional[dns.resolver.Resolver] = None,
    timeout: float = 2.0,
    timeout_retries: int = 2,
    _attempt: int = 0,
    cache: Optional[ExpiringDict] = None,
) -> list[str]:
    """
    Queries DNS

    Args:
        domain (str): The domain or subdomain to query about
        record_type (str): The record type to query for
        nameservers (list): A list of one or more nameservers to use
        resolver (dns.resolver.Resolver): A resolver object to use for DNS
                                          requests
        timeout (float): Sets the DNS timeout in seconds
        timeout_retries (int): The number of times to reattempt a query after a timeout
        cache (ExpiringDict): Cache storage

    Returns:
        list: A list of answers
    """
    domain = normalize_domain(domain)
    record_type = record_type.upper()
    cache_key = f"{domain}_{record_type}"
    if cache is None:
        cache = DNS_CACHE
    if isinstance(cache, ExpiringDict):
        records = cache.get(cache_key)
        if isinstance(records, list):
            return records
    if not resolver:
        resolver = dns.resolver.Resolver()
        timeout = float(timeout)
        if nameservers is not None:
            resolver.nameservers = nameservers
        resolver.timeout = timeout
        resolver.lifetime = timeout
    try:
        answers = resolver.resolve(domain, record_type, lifetime=timeout)
    except dns.resolver.LifetimeTimeout as e:
        _attempt += 1
        if _attempt > timeout_retries:
            raise e
        logging.debug(f"Retrying {record_type} query for {domain} ({_attempt})")
        return query_dns(
            domain,
            record_type,
            nameservers=nameservers,
            resolver=resolver,
            timeout=timeout,
            timeout_retries=timeout_retries,
            _attempt=_attempt,
            cache=cache,
        )
    if record_type == "TXT":
        records = []
        for answer in answers:
            try:
                records.append(b"".join(answer.strings).decode())
            except UnicodeDecodeError:
                records.append("Undecodable characters")
    else:
        records = list(
            map(
                lambda r: r.to_text().rstrip("."),
                answers,
            )
        )
    if isinstance(cache, ExpiringDict):
        cache[cache_key] = records

    return records


def get_txt_records(
    domain: str,
    *,
    nameservers: Optional[Sequence[str | Nameserver]] = None,
    resolver: Optional[dns.resolver.Resolver] = None,
    timeout: float = 2.0,
    timeout_retries: int = 2,
) -> list[str]:
    """
    Queries DNS for TXT records

    Args:
        domain (str): A domain name
        nameservers (list): A list of nameservers to query
        resolver (dns.resolver.Resolver): A resolver object to use for DNS
                                          requests
        timeout (float): number of seconds to wait for an answer from DNS
        timeout_retries (int): The number of times to reattempt a query after a timeout

    Returns:
        list: A list of TXT records, empty if the name has none

    Raises:
        :exc:`mailadvisor.utils.DNSException`
    """
    try:
        records = query_dns(
            domain,
            "TXT",
            nameservers=nameservers,
            resolver=resolver,
            timeout=timeout,
            timeout_retries=timeout_retries,
        )
    except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer):
        return []
    except Exception as error:
        raise DNSException(error)

    return records


def get_mx_records(
    domain: str,
    *,
    nameservers: Optional[Sequence[str | Nameserver]] = None,
    resolver: Optional[dns.resolver.Resolver] = None,
    timeout: float = 2.0,
    timeout_retries: int = 2,
) -> list[MXHost]:
    """
    Queries DNS for a list of Mail Exchange hosts

    Args:
        domain (str): A domain name
        nameservers (list): A list of nameservers to query
        resolver (dns.resolver.Resolver): A resolver object to use for DNS
                                          requests
        timeout (float): number of seconds to wait for an answer from DNS
        timeout_retries (int): The number of times to reattempt a query after a timeout

    Returns:
        list: A list of ``dicts``; each containing a ``preference``
                        integer and a ``hostname``

    Raises:
        :exc:`mailadvisor.utils.DNSExceptionNXDOMAIN`
        :exc:`mailadvisor.utils.DNSException`
    """
    hosts = []
    try:
        logging.debug(f"Checking for MX records on {domain}")
        answers = query_dns(
            domain,
            "MX",
            nameservers=nameservers,
            resolver=resolver,
            timeout=timeout,
            timeout_retries=timeout_retries,
        )
        if answers == ["0 "]:
            logging.debug('"No Service" MX record found')
            return []
        for record in answers:
            record = record.split(" ")
            preference = int(record[0])
            hostname = record[1].rstrip(".").strip().lower()
            hosts.append({"preference": preference, "hostname": hostname})
        hosts = sorted(hosts, key=lambda h: (h["preference"], h["hostname"]))
    except dns.resolver.NXDOMAIN:
        raise DNSExceptionNXDOMAIN("The domain does not exist.")
    except dns.resolver.NoAnswer:
        pass
    except Exception as error:
        raise DNSException(error)
    return hosts
