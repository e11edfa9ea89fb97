# -*- coding: utf-8 -*-

"""Advises on the email authentication and transport security of domains"""

from __future__ import annotations

import json
import logging
from concurrent.futures import ThreadPoolExecutor
from csv import DictWriter
from io import StringIO
from time import sleep
from typing import Optional, TypedDict, Union
from collections.abc import Callable, Sequence

import dns.resolver
from dns.nameserver import Nameserver
from expiringdict import ExpiringDict

import mailadvisor._constants
from mailadvisor._constants import (
    DEFAULT_DIAL_TIMEOUT,
    DKIM_SELECTORS,
    HTTPS_PORT,
    TLS_CACHE_MAX_AGE_SECONDS,
    TLS_CACHE_MAX_LEN,
)
from mailadvisor.bimi import check_bimi
from mailadvisor.dkim import check_dkim
from mailadvisor.dmarc import check_dmarc
from mailadvisor.spf import check_spf
from mailadvisor.tls import TLS_NO_FURTHER_ACTION, test_starttls, test_tls
from mailadvisor.utils import (
    DNSException,
    get_mx_records,
    get_txt_records,
    is_consumer_domain,
    normalize_domain,
    strip_trailing_dot,
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


__version__ = mailadvisor._constants.__version__

CONSUMER_DOMAIN = (
    "Consumer based accounts (i.e gmail.com, yahoo.com, etc) are controlled "
    "by the vendor. They are responsible for setting DKIM, SPF and DMARC "
    "capabilities on their domains."
)
DOMAIN_OK = "Your domain looks good! No further action needed."
MX_MISSING = (
    "You do not have any mail servers setup, so you cannot receive email at "
    "this domain."
)
MX_SINGLE = (
    "You have a single mail server setup, but it's recommended that you have "
    "at least two setup in case the first one fails."
)
MX_MULTIPLE = "You have multiple mail servers setup, which is recommended."
MX_ALL_TLS13 = "All of your domains are using TLS 1.3, no further action needed!"
MX_OK = "You have a multiple mail servers setup! No further action needed."

ADVICE_FIELDS = ["domain", "bimi", "dkim", "dmarc", "mx", "spf"]


class Advice(TypedDict):
    domain: list[str]
    bimi: list[str]
    dkim: list[str]
    dmarc: list[str]
    mx: list[str]
    spf: list[str]


class Records(TypedDict):
    bimi: str
    dkim: str
    dmarc: str
    mx: list[str]
    spf: str


class Advisor:
    """
    Checks already-fetched email DNS records and tests the TLS support of
    the domain and its mail servers

    Each advisor keeps its own TLS result caches, so repeated checks of the
    same hosts within ``cache_lifetime`` don't touch the network.
    """

    def __init__(
        self,
        timeout: float = DEFAULT_DIAL_TIMEOUT,
        cache_lifetime: float = TLS_CACHE_MAX_AGE_SECONDS,
        check_tls: bool = True,
    ):
        """
        Args:
            timeout (float): Number of seconds to wait for each network
                             operation
            cache_lifetime (float): Number of seconds to cache TLS results for
            check_tls (bool): Test the TLS support of the domain and its
                              mail servers
        """
        self.timeout = timeout
        self.check_tls = check_tls
        self.tls_cache_host = ExpiringDict(
            max_len=TLS_CACHE_MAX_LEN, max_age_seconds=cache_lifetime
        )
        self.tls_cache_mail = ExpiringDict(
            max_len=TLS_CACHE_MAX_LEN, max_age_seconds=cache_lifetime
        )

    def check_all(
        self,
        domain: str,
        bimi: str,
        dkim: str,
        dmarc: str,
        mx: Sequence[str],
        spf: str,
    ) -> Advice:
        """
        Runs every check concurrently and returns the combined advice

        Args:
            domain (str): The domain name
            bimi (str): The BIMI record
            dkim (str): A DKIM record found under a known selector
            dmarc (str): The DMARC record
            mx (list): The mail server hostnames, in preference order
            spf (str): The SPF record

        Returns:
            dict: A list of advice strings for each of ``domain``,
            ``bimi``, ``dkim``, ``dmarc``, ``mx`` and ``spf``
        """
        checks: dict[str, tuple[Callable, object]] = {
            "domain": (self.check_domain, domain),
            "bimi": (self.check_bimi, bimi),
            "dkim": (self.check_dkim, dkim),
            "dmarc": (self.check_dmarc, dmarc),
            "mx": (self.check_mx, mx),
            "spf": (self.check_spf, spf),
        }
        with ThreadPoolExecutor(max_workers=len(checks)) as executor:
            futures = {
                name: executor.submit(check, value)
                for name, (check, value) in checks.items()
            }
        advice = {}
        for name, future in futures.items():
            try:
                advice[name] = future.result()
            except Exception as e:
                logging.debug(f"The {name} check failed: {e}")
                advice[name] = [f"The {name} check could not be completed: {e}"]
        return Advice(**advice)

    def check_bimi(self, record: str) -> list[str]:
        return check_bimi(record, timeout=self.timeout)

    def check_dkim(self, record: str) -> list[str]:
        return check_dkim(record)

    def check_dmarc(self, record: str) -> list[str]:
        return check_dmarc(record)

    def check_spf(self, record: str) -> list[str]:
        return check_spf(record)

    def check_domain(self, domain: str) -> list[str]:
        """
        Returns advice about the domain itself

        Consumer mail provider domains are not checked further. Otherwise,
        the TLS support of the domain's HTTPS port is tested when
        ``check_tls`` is enabled.
        """
        if is_consumer_domain(domain):
            return [CONSUMER_DOMAIN]

        advice = []
        if self.check_tls:
            advice += test_tls(
                domain,
                HTTPS_PORT,
                timeout=self.timeout,
                cache=self.tls_cache_host,
            )
        if len(advice) == 0:
            return [DOMAIN_OK]
        return advice

    def check_mx(self, mx: Sequence[str]) -> list[str]:
        """
        Returns advice about the mail servers of a domain

        When ``check_tls`` is enabled, STARTTLS is tested on each mail
        server in turn, and each line of TLS advice is prefixed with the
        server's hostname. If every server uses TLS 1.3, the advice is
        collapsed into a single line.
        """
        if len(mx) == 0:
            return [MX_MISSING]
        if len(mx) == 1:
            advice = [MX_SINGLE]
        else:
            advice = [MX_MULTIPLE]

        if self.check_tls:
            server_advice = []
            for hostname in mx:
                hostname = strip_trailing_dot(hostname)
                for line in test_starttls(
                    hostname, timeout=self.timeout, cache=self.tls_cache_mail
                ):
                    server_advice.append(f"{hostname}: {line}")
            if len(server_advice) > 0 and all(
                TLS_NO_FURTHER_ACTION in line for line in server_advice
            ):
                return [MX_ALL_TLS13]
            advice += server_advice

        if len(advice) == 0:
            return [MX_OK]
        return advice


def _find_txt_record(name: str, prefix: str, **kwargs) -> str:
    for record in get_txt_records(name, **kwargs):
        if record.lower().startswith(prefix):
            return record
    return ""


def get_dkim_record(
    domain: str,
    *,
    selectors: Optional[Sequence[str]] = None,
    nameservers: Optional[Sequence[str | Nameserver]] = None,
    resolver: Optional[dns.resolver.Resolver] = None,
    timeout: float = 2.0,
    timeout_retries: int = 2,
) -> str:
    """
    Looks for a DKIM key record under each of the given selectors

    Args:
        domain (str): A domain name
        selectors (list): DKIM selectors to try, in order
        nameservers (list): A list of nameservers to query
        resolver (dns.resolver.Resolver): A resolver object to use for DNS
                                          requests
        timeout (float): number of seconds to wait for an answer from DNS
        timeout_retries (int): The number of times to reattempt a query after a timeout

    Returns:
        str: The first DKIM record found, or an empty string
    """
    if selectors is None:
        selectors = DKIM_SELECTORS
    for selector in selectors:
        name = f"{selector}._domainkey.{domain}"
        try:
            records = get_txt_records(
                name,
                nameservers=nameservers,
                resolver=resolver,
                timeout=timeout,
                timeout_retries=timeout_retries,
            )
        except DNSException as e:
            logging.debug(f"DKIM lookup failed for {name}: {e}")
            continue
        for record in records:
            if record.lower().startswith("v=dkim1") or "p=" in record:
                logging.debug(f"Found a DKIM record using the {selector} selector")
                return record
    return ""


def get_records(
    domain: str,
    *,
    dkim_selectors: Optional[Sequence[str]] = None,
    bimi_selector: str = "default",
    nameservers: Optional[Sequence[str | Nameserver]] = None,
    resolver: Optional[dns.resolver.Resolver] = None,
    timeout: float = 2.0,
    timeout_retries: int = 2,
) -> Records:
    """
    Fetches the email-related DNS records of a domain

    Args:
        domain (str): A domain name
        dkim_selectors (list): DKIM selectors to try, in order
        bimi_selector (str): The BIMI selector to use
        nameservers (list): A list of nameservers to query
        resolver (dns.resolver.Resolver): A resolver object to use for DNS
                                          requests
        timeout (float): number of seconds to wait for an answer from DNS
        timeout_retries (int): The number of times to reattempt a query after a timeout

    Returns:
        dict: A ``dict`` with the keys ``bimi``, ``dkim``, ``dmarc``,
        ``mx`` and ``spf``. Missing records are empty.

    Raises:
        :exc:`mailadvisor.utils.DNSException`
    """
    options = dict(
        nameservers=nameservers,
        resolver=resolver,
        timeout=timeout,
        timeout_retries=timeout_retries,
    )
    logging.debug(f"Fetching records for {domain}")
    records: Records = {
        "bimi": _find_txt_record(
            f"{bimi_selector}._bimi.{domain}", "v=bimi1", **options
        ),
        "dkim": get_dkim_record(domain, selectors=dkim_selectors, **options),
        "dmarc": _find_txt_record(f"_dmarc.{domain}", "v=dmarc1", **options),
        "mx": [host["hostname"] for host in get_mx_records(domain, **options)],
        "spf": _find_txt_record(domain, "v=spf1", **options),
    }
    return records


def check_domains(
    domains: list[str],
    *,
    advisor: Optional[Advisor] = None,
    dkim_selectors: Optional[Sequence[str]] = None,
    bimi_selector: str = "default",
    nameservers: Optional[Sequence[str | Nameserver]] = None,
    resolver: Optional[dns.resolver.Resolver] = None,
    timeout: float = 2.0,
    timeout_retries: int = 2,
    wait: float = 0.0,
) -> Union[dict, list[dict]]:
    """
    Fetches the email-related DNS records of the given domains and returns
    advice about them

    Args:
        domains (list): A list of domains to check
        advisor (Advisor): The advisor to use
        dkim_selectors (list): DKIM selectors to try, in order
        bimi_selector (str): The BIMI selector to use
        nameservers (list): A list of nameservers to query
        resolver (dns.resolver.Resolver): A resolver object to use for DNS
                                          requests
        timeout (float): number of seconds to wait for an answer from DNS
        timeout_retries (int): The number of times to reattempt a query after a timeout
        wait (float): number of seconds to wait between processing domains

    Returns:
       A ``dict`` or ``list`` of ``dict`` with the following keys

       - ``domain`` - The domain name
       - ``records`` - See :func:`mailadvisor.get_records`
       - ``advice`` - See :meth:`mailadvisor.Advisor.check_all`

       If the records could not be fetched, ``error`` replaces
       ``records`` and ``advice``.
    """
    if advisor is None:
        advisor = Advisor()
    domains = sorted(
        set(
            map(
                lambda d: normalize_domain(d.rstrip(".\r\n").strip().split(",")[0]),
                domains,
            )
        )
    )
    domains = [domain for domain in domains if "." in domain]
    results = []
    for domain in domains:
        logging.debug(f"Checking: {domain}")
        domain_results = {"domain": domain}
        try:
            records = get_records(
                domain,
                dkim_selectors=dkim_selectors,
                bimi_selector=bimi_selector,
                nameservers=nameservers,
                resolver=resolver,
                timeout=timeout,
                timeout_retries=timeout_retries,
            )
            domain_results["records"] = records
            domain_results["advice"] = advisor.check_all(
                domain,
                records["bimi"],
                records["dkim"],
                records["dmarc"],
                records["mx"],
                records["spf"],
            )
        except DNSException as error:
            domain_results["error"] = str(error)
        results.append(domain_results)
        if wait > 0.0:
            logging.debug(f"Sleeping for {wait} seconds")
            sleep(wait)
    if len(results) == 1:
        results = results[0]

    return results


def _omit_empty_advice(result: dict) -> dict:
    if "advice" not in result:
        return result
    result = dict(result)
    result["advice"] = {
        field: lines for field, lines in result["advice"].items() if len(lines) > 0
    }
    return result


def results_to_json(results: Union[dict, list[dict]]) -> str:
    """
    Converts a dictionary of results or list of results to a JSON string

    Empty advice fields are omitted.

    Args:
        results (dict): A dictionary of results

    Returns:
        str: Results in JSON format
    """
    if isinstance(results, dict):
        results = _omit_empty_advice(results)
    else:
        results = list(map(_omit_empty_advice, results))
    return json.dumps(results, ensure_ascii=False, indent=2)


def results_to_csv_rows(results: Union[dict, list[dict]]) -> list[dict]:
    """
    Converts a results dictionary or list of dictionaries and returns a
    list of CSV row dictionaries

    Args:
        results (dict): A dictionary of results

    Returns:
        list: A list of CSV row dictionaries
    """
    rows = []

    if isinstance(results, dict):
        results = [results]

    for result in results:
        row = {"domain": result["domain"]}
        if "error" in result:
            row["error"] = result["error"]
            rows.append(row)
            continue
        records = result["records"]
        row["spf_record"] = records["spf"]
        row["dmarc_record"] = records["dmarc"]
        row["dkim_record"] = records["dkim"]
        row["bimi_record"] = records["bimi"]
        row["mx"] = "|".join(records["mx"])
        for field in ADVICE_FIELDS:
            row[f"{field}_advice"] = "|".join(result["advice"][field])
        rows.append(row)
    return rows


def results_to_csv(results: Union[dict, list[dict]]) -> str:
    """
    Converts a dictionary of results to CSV

    Args:
        results (dict): A dictionary of results

    Returns:
        str: A CSV of results
    """
    fields = [
        "domain",
        "error",
        "spf_record",
        "dmarc_record",
        "dkim_record",
        "bimi_record",
        "mx",
    ] + [f"{field}_advice" for field in ADVICE_FIELDS]
    output = StringIO(newline="\n")
    writer = DictWriter(output, fieldnames=fields)
    writer.writeheader()
    writer.writerows(results_to_csv_rows(results))
    output.flush()

    return output.getvalue()


def output_to_file(path: str, content: str):
    """
    Write given content to the given path

    Args:
        path (str): A file path
        content (str): JSON or CSV text
    """
    with open(
        path, "w", newline="\n", encoding="utf-8", errors="ignore"
    ) as output_file:
        output_file.write(content)
