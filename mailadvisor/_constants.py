# -*- coding: utf-8 -*-
"""Constant values"""

from __future__ import annotations
import platform
import os

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

__version__ = "1.0.0"

OS = platform.system()
OS_RELEASE = platform.release()
USER_AGENT = f"Mozilla/5.0 (({OS} {OS_RELEASE})) mailadvisor/{__version__}"
GUIDE_URL = "https://dmarcguide.globalcyberalliance.org"
DEFAULT_HTTP_TIMEOUT = 2.0
DEFAULT_DIAL_TIMEOUT = 5.0
BIMI_MAX_LOGO_SIZE = 32 * 1024
HTTPS_PORT = 443
SMTP_PORT = 25
CACHE_MAX_LEN = 200000
CACHE_MAX_AGE_SECONDS = 1800

env = os.environ

if "CACHE_MAX_LEN" in env:
    CACHE_MAX_LEN = int(env["CACHE_MAX_LEN"])
if "CACHE_MAX_AGE_SECONDS" in env:
    CACHE_MAX_AGE_SECONDS = int(env["CACHE_MAX_AGE_SECONDS"])

DNS_CACHE_MAX_LEN = CACHE_MAX_LEN
if "DNS_CACHE_MAX_LEN" in env:
    DNS_CACHE_MAX_LEN = int(env["DNS_CACHE_MAX_LEN"])
DNS_CACHE_MAX_AGE_SECONDS = CACHE_MAX_AGE_SECONDS
if "DNS_CACHE_MAX_AGE_SECONDS" in env:
    DNS_CACHE_MAX_AGE_SECONDS = int(env["DNS_CACHE_MAX_AGE_SECONDS"])

TLS_CACHE_MAX_LEN = CACHE_MAX_LEN
if "TLS_CACHE_MAX_LEN" in env:
    TLS_CACHE_MAX_LEN = int(env["TLS_CACHE_MAX_LEN"])
TLS_CACHE_MAX_AGE_SECONDS = CACHE_MAX_AGE_SECONDS
if "TLS_CACHE_MAX_AGE_SECONDS" in env:
    TLS_CACHE_MAX_AGE_SECONDS = int(env["TLS_CACHE_MAX_AGE_SECONDS"])

# Selectors published by the most common mail providers and platforms
DKIM_SELECTORS = [
    "default",
    "dkim",
    "google",
    "k1",
    "k2",
    "mail",
    "mandrill",
    "mxvault",
    "s1",
    "s2",
    "selector",
    "selector1",
    "selector2",
    "smtp",
    "x",
]

CONSUMER_DOMAINS = frozenset(
    [
        "aol.com",
        "comcast.net",
        "gmail.com",
        "gmx.com",
        "gmx.net",
        "googlemail.com",
        "hotmail.co.uk",
        "hotmail.com",
        "icloud.com",
        "live.com",
        "mac.com",
        "mail.com",
        "mail.ru",
        "me.com",
        "msn.com",
        "outlook.com",
        "proton.me",
        "protonmail.com",
        "web.de",
        "yahoo.co.uk",
        "yahoo.com",
        "yandex.com",
        "yandex.ru",
        "zoho.com",
    ]
)
