#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Advises on the email authentication and transport security of domains"""

from __future__ import annotations

import os
from argparse import ArgumentParser

import logging

from mailadvisor import (
    __version__,
    Advisor,
    check_domains,
    results_to_json,
    results_to_csv,
    output_to_file,
)
from mailadvisor._constants import DEFAULT_DIAL_TIMEOUT, TLS_CACHE_MAX_AGE_SECONDS

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


def _main():
    """Called when the module in executed"""
    arg_parser = ArgumentParser(description=__doc__)
    arg_parser.add_argument(
        "domain",
        nargs="+",
        help="one or more domains, or a single path to a "
        "file containing a list of domains",
    )
    arg_parser.add_argument(
        "-f",
        "--format",
        default="json",
        help="specify JSON or CSV screen output format",
    )
    arg_parser.add_argument(
        "-o",
        "--output",
        nargs="+",
        help="one or more file paths to output to "
        "(must end in .json or .csv) "
        "(silences screen output)",
    )
    arg_parser.add_argument(
        "-n", "--nameserver", nargs="+", help="nameservers to query"
    )
    arg_parser.add_argument(
        "-t",
        "--timeout",
        help="number of seconds to wait for an answer from DNS (default 2.0)",
        type=float,
        default=2.0,
    )
    arg_parser.add_argument(
        "--timeout-retries",
        help="number of times to reattempt a query after a timeout (default 2)",
        type=int,
        default=2,
    )
    arg_parser.add_argument(
        "--dial-timeout",
        help="number of seconds to wait for TLS, SMTP and HTTP connections "
        f"(default {DEFAULT_DIAL_TIMEOUT})",
        type=float,
        default=DEFAULT_DIAL_TIMEOUT,
    )
    arg_parser.add_argument(
        "--cache-lifetime",
        help="number of seconds to cache TLS results for "
        f"(default {TLS_CACHE_MAX_AGE_SECONDS})",
        type=float,
        default=TLS_CACHE_MAX_AGE_SECONDS,
    )
    arg_parser.add_argument(
        "-b", "--bimi-selector", default="default", help="the BIMI selector to use"
    )
    arg_parser.add_argument(
        "--dkim-selector",
        action="append",
        help="a DKIM selector to look for (may be repeated; "
        "replaces the built-in list)",
    )
    arg_parser.add_argument("-v", "--version", action="version", version=__version__)
    arg_parser.add_argument(
        "-w",
        "--wait",
        type=float,
        help="number of seconds to wait between checking domains (default 0.0)",
        default=0.0,
    )
    arg_parser.add_argument(
        "--skip-tls", action="store_true", help="skip TLS/SSL testing"
    )
    arg_parser.add_argument(
        "--debug", action="store_true", help="enable debugging output"
    )

    args = arg_parser.parse_args()

    logging_format = "%(asctime)s - %(levelname)s: %(message)s"
    logging.basicConfig(level=logging.WARNING, format=logging_format)

    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)
        logging.debug("Debug output enabled")
    domains = args.domain
    if len(domains) == 1 and os.path.exists(domains[0]):
        with open(domains[0]) as domains_file:
            domains = domains_file.readlines()

    advisor = Advisor(
        timeout=args.dial_timeout,
        cache_lifetime=args.cache_lifetime,
        check_tls=not args.skip_tls,
    )
    results = check_domains(
        domains,
        advisor=advisor,
        dkim_selectors=args.dkim_selector,
        bimi_selector=args.bimi_selector,
        nameservers=args.nameserver,
        timeout=args.timeout,
        timeout_retries=args.timeout_retries,
        wait=args.wait,
    )

    if args.output is None:
        if args.format.lower() == "json":
            results = results_to_json(results)
        elif args.format.lower() == "csv":
            results = results_to_csv(results)
        print(results)
    else:
        for path in args.output:
            json_path = path.lower().endswith(".json")
            csv_path = path.lower().endswith(".csv")

            if not json_path and not csv_path:
                logging.error(f"Output path {path} must end in .json or .csv")
            elif json_path:
                output_to_file(path, results_to_json(results))
            elif csv_path:
                output_to_file(path, results_to_csv(results))


if __name__ == "__main__":
    _main()
