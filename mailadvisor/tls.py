# -*- coding: utf-8 -*-
"""TLS and STARTTLS connection checks"""

from __future__ import annotations

import logging
import smtplib
import socket
import ssl
from typing import Optional

from expiringdict import ExpiringDict

from mailadvisor._constants import (
    DEFAULT_DIAL_TIMEOUT,
    HTTPS_PORT,
    SMTP_PORT,
    TLS_CACHE_MAX_AGE_SECONDS,
    TLS_CACHE_MAX_LEN,
)
from mailadvisor.utils import strip_trailing_dot

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


TLS_CACHE = ExpiringDict(
    max_len=TLS_CACHE_MAX_LEN, max_age_seconds=TLS_CACHE_MAX_AGE_SECONDS
)
STARTTLS_CACHE = ExpiringDict(
    max_len=TLS_CACHE_MAX_LEN, max_age_seconds=TLS_CACHE_MAX_AGE_SECONDS
)

NO_VALID_CERTIFICATE = "No valid certificate could be found."
REACH_FAILED = "Failed to reach domain"
REACH_TIMED_OUT = "Failed to reach domain before timeout"
STARTTLS_FAILED = "Failed to start TLS connection"
TLS_NO_FURTHER_ACTION = "no further action needed"

_OUTDATED_VERSIONS = {"TLSv1": "1.0", "TLSv1.1": "1.1"}


def check_tls_version(version: Optional[str]) -> str:
    """
    Returns advice for a negotiated TLS version

    Args:
        version (str): A protocol name as returned by
                       :meth:`ssl.SSLSocket.version`, e.g. ``TLSv1.2``

    Returns:
        str: A single line of advice
    """
    if version in _OUTDATED_VERSIONS:
        return (
            f"Your domain is using TLS version {_OUTDATED_VERSIONS[version]} "
            "which is outdated, and should be upgraded to TLS 1.3."
        )
    if version == "TLSv1.2":
        return "Your domain is using TLS version 1.2, and should be upgraded to TLS 1.3."
    if version == "TLSv1.3":
        return f"Your domain is using TLS 1.3, {TLS_NO_FURTHER_ACTION}!"
    return (
        "Your domain is using an unrecognized version of TLS, you should "
        "verify that it's using TLS 1.3 or above."
    )


def _ssl_context(verify: bool) -> ssl.SSLContext:
    context = ssl.create_default_context()
    # Old protocol versions must be negotiable to be reported
    context.minimum_version = ssl.TLSVersion.MINIMUM_SUPPORTED
    if not verify:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


def _negotiate_tls(
    hostname: str, port: int, *, timeout: float, verify: bool
) -> Optional[str]:
    """Opens a TLS connection and returns the negotiated protocol version"""
    context = _ssl_context(verify)
    with socket.create_connection((hostname, port), timeout=timeout) as sock:
        with context.wrap_socket(sock, server_hostname=hostname) as tls_sock:
            return tls_sock.version()


def _smtp_connect(hostname: str, timeout: float) -> smtplib.SMTP:
    """
    Connects to a mail server and reads its greeting

    Raises:
        TimeoutError: The server didn't answer in time
        smtplib.SMTPConnectError: The server did not greet with a 220
        OSError: The connection failed
    """
    return smtplib.SMTP(hostname, SMTP_PORT, timeout=timeout)


def _starttls(client: smtplib.SMTP, verify: bool) -> Optional[str]:
    client.starttls(context=_ssl_context(verify))
    return client.sock.version()


def _quit(client: smtplib.SMTP):
    try:
        client.quit()
    except Exception as e:
        logging.debug(e)
    finally:
        client.close()


def test_tls(
    hostname: str,
    port: int = HTTPS_PORT,
    *,
    timeout: float = DEFAULT_DIAL_TIMEOUT,
    cache: Optional[ExpiringDict] = None,
) -> list[str]:
    """
    Connects to a host over TLS and returns advice about the connection

    If the certificate can't be verified, the connection is retried once
    without verification so the protocol version can still be reported.

    .. note::
        Every result, including failures, is cached by hostname

    Args:
        hostname (str): A hostname, with or without a trailing dot
        port (int): The TCP port to connect to
        timeout (float): Number of seconds to wait for the connection
        cache (ExpiringDict): Cache storage

    Returns:
        list: A list of advice strings
    """
    hostname = strip_trailing_dot(hostname)
    if cache is None:
        cache = TLS_CACHE
    cached_result = cache.get(hostname)
    if isinstance(cached_result, list):
        return list(cached_result)
    if not port:
        port = HTTPS_PORT

    advice: list[str] = []
    logging.debug(f"Testing TLS on {hostname}:{port}")
    try:
        try:
            version = _negotiate_tls(hostname, port, timeout=timeout, verify=True)
        except socket.gaierror as e:
            logging.debug(f"{hostname}: {e}")
            advice = [f"{hostname} could not be reached"]
            return advice
        except ssl.SSLCertVerificationError as e:
            logging.debug(f"{hostname}: {e}")
            advice.append(NO_VALID_CERTIFICATE)
            try:
                version = _negotiate_tls(
                    hostname, port, timeout=timeout, verify=False
                )
            except Exception as retry_error:
                logging.debug(f"{hostname}: {retry_error}")
                return advice
        except Exception as e:
            advice = [f"{REACH_FAILED}: {e}"]
            return advice

        advice.append(check_tls_version(version))
        return advice
    finally:
        cache[hostname] = advice


def test_starttls(
    hostname: str,
    *,
    timeout: float = DEFAULT_DIAL_TIMEOUT,
    cache: Optional[ExpiringDict] = None,
) -> list[str]:
    """
    Connects to a mail server on port 25, issues STARTTLS and returns advice
    about the connection

    If the certificate can't be verified, a new connection is made and
    STARTTLS is retried once without verification.

    .. note::
        Every result, including failures, is cached by hostname

    Args:
        hostname (str): A mail server hostname, with or without a trailing dot
        timeout (float): Number of seconds to wait for each network operation
        cache (ExpiringDict): Cache storage

    Returns:
        list: A list of advice strings
    """
    hostname = strip_trailing_dot(hostname)
    if cache is None:
        cache = STARTTLS_CACHE
    cached_result = cache.get(hostname)
    if isinstance(cached_result, list):
        return list(cached_result)

    advice: list[str] = []
    client = None
    logging.debug(f"Testing STARTTLS on {hostname}")
    try:
        try:
            client = _smtp_connect(hostname, timeout)
        except TimeoutError:
            advice = [REACH_TIMED_OUT]
            return advice
        except OSError as e:
            logging.debug(f"{hostname}: {e}")
            advice = [REACH_FAILED]
            return advice

        try:
            version = _starttls(client, verify=True)
        except ssl.SSLCertVerificationError as e:
            logging.debug(f"{hostname}: {e}")
            advice.append(NO_VALID_CERTIFICATE)
            # The failed handshake leaves the connection unusable
            client.close()
            client = None
            try:
                client = _smtp_connect(hostname, timeout)
            except OSError as retry_error:
                logging.debug(f"{hostname}: {retry_error}")
                advice = [REACH_FAILED]
                return advice
            try:
                version = _starttls(client, verify=False)
            except Exception as retry_error:
                logging.debug(f"{hostname}: {retry_error}")
                advice.append(STARTTLS_FAILED)
                return advice
        except Exception as e:
            advice = [f"{STARTTLS_FAILED}: {e}"]
            return advice

        advice.append(check_tls_version(version))
        _quit(client)
        return advice
    finally:
        if client is not None:
            client.close()
        cache[hostname] = advice
