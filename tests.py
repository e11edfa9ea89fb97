#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""Automated tests"""

import datetime
import ipaddress
import json
import os
import smtplib
import socket
import ssl
import tempfile
import threading
import time
import unittest
from unittest import mock

import requests
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID
from expiringdict import ExpiringDict

import mailadvisor
import mailadvisor.bimi
import mailadvisor.dkim
import mailadvisor.dmarc
import mailadvisor.spf
import mailadvisor.tls
import mailadvisor.utils
from mailadvisor.utils import DNSException

TLS13_ADVICE = mailadvisor.tls.check_tls_version("TLSv1.3")
TLS12_ADVICE = mailadvisor.tls.check_tls_version("TLSv1.2")


def _response(status_code=200, content_length=None):
    response = mock.Mock()
    response.status_code = status_code
    response.headers = {}
    if content_length is not None:
        response.headers["Content-Length"] = str(content_length)
    return response


class Test(unittest.TestCase):
    def testSPFMissing(self):
        """A missing SPF record only returns the missing record advice"""
        self.assertEqual(mailadvisor.spf.check_spf(""), [mailadvisor.spf.SPF_MISSING])

    def testSPFPlusAll(self):
        """+all is warned about before anything else"""
        self.assertEqual(
            mailadvisor.spf.check_spf("v=spf1 +all"), [mailadvisor.spf.SPF_PLUS_ALL]
        )

    def testSPFFailAll(self):
        self.assertEqual(
            mailadvisor.spf.check_spf("v=spf1 include:_spf.google.com -all"),
            [mailadvisor.spf.SPF_OK],
        )

    def testSPFMissingAll(self):
        self.assertEqual(
            mailadvisor.spf.check_spf("v=spf1"), [mailadvisor.spf.SPF_MISSING_ALL]
        )

    def testDKIMValid(self):
        self.assertEqual(
            mailadvisor.dkim.check_dkim("v=DKIM1; k=rsa; p=ABC"),
            [mailadvisor.dkim.DKIM_OK],
        )

    def testDKIMWrongVersion(self):
        """Only the version tag is reported when it is the only problem"""
        self.assertEqual(
            mailadvisor.dkim.check_dkim("v=DKIM2; k=rsa; p=ABC"),
            [mailadvisor.dkim.DKIM_BAD_VERSION],
        )

    def testDKIMPositionalTags(self):
        """The second and third tags are checked by position"""
        advice = mailadvisor.dkim.check_dkim("v=DKIM1; p=ABC; k=rsa; t=s")
        self.assertEqual(
            advice,
            [mailadvisor.dkim.DKIM_BAD_ALGORITHM, mailadvisor.dkim.DKIM_MISSING_KEY],
        )
        self.assertEqual(
            mailadvisor.dkim.check_dkim("v=DKIM1; a=rsa-sha256; p=ABC"),
            [mailadvisor.dkim.DKIM_OK],
        )

    def testDKIMMissingAndMalformed(self):
        self.assertEqual(
            mailadvisor.dkim.check_dkim(""), [mailadvisor.dkim.DKIM_MISSING]
        )
        self.assertEqual(
            mailadvisor.dkim.check_dkim("v=DKIM1 k=rsa p=ABC"),
            [mailadvisor.dkim.DKIM_MALFORMED],
        )

    def testDMARCMissingAndMalformed(self):
        self.assertEqual(
            mailadvisor.dmarc.check_dmarc(""), [mailadvisor.dmarc.DMARC_MISSING]
        )
        self.assertEqual(
            mailadvisor.dmarc.check_dmarc("v=DMARC1 p=none"),
            [mailadvisor.dmarc.DMARC_MALFORMED],
        )

    def testDMARCRejectWithReports(self):
        """A reject policy with a valid rua destination gets no destination
        advice"""
        advice = mailadvisor.dmarc.check_dmarc("v=DMARC1;p=reject;rua=mailto:a@b.com")
        self.assertIn(mailadvisor.dmarc.DMARC_POLICY_ADVICE[("reject", True)], advice)
        self.assertNotIn(mailadvisor.dmarc.DMARC_RUA_MISSING_MAILTO, advice)
        self.assertNotIn(mailadvisor.dmarc.DMARC_RUA_INVALID_EMAIL, advice)
        self.assertNotIn(mailadvisor.dmarc.DMARC_CONSIDER_RUA, advice)
        self.assertEqual(
            advice,
            [
                mailadvisor.dmarc.DMARC_POLICY_ADVICE[("reject", True)],
                mailadvisor.dmarc.DMARC_CONSIDER_FO,
                mailadvisor.dmarc.DMARC_CONSIDER_RUF,
                mailadvisor.dmarc.DMARC_CONSIDER_SP,
            ],
        )

    def testDMARCInvalidAggregateDestination(self):
        advice = mailadvisor.dmarc.check_dmarc("v=DMARC1;p=reject;rua=bad")
        self.assertIn(mailadvisor.dmarc.DMARC_RUA_MISSING_MAILTO, advice)
        self.assertIn(mailadvisor.dmarc.DMARC_RUA_INVALID_EMAIL, advice)

    def testDMARCInvalidForensicDestination(self):
        """A ruf destination without mailto: skips the address check"""
        advice = mailadvisor.dmarc.check_dmarc("v=DMARC1;p=none;ruf=bad")
        self.assertIn(mailadvisor.dmarc.DMARC_RUF_MISSING_MAILTO, advice)
        self.assertNotIn(mailadvisor.dmarc.DMARC_RUF_INVALID_EMAIL, advice)
        advice = mailadvisor.dmarc.check_dmarc("v=DMARC1;p=none;ruf=mailto:bad")
        self.assertIn(mailadvisor.dmarc.DMARC_RUF_INVALID_EMAIL, advice)

    def testDMARCPolicyWithoutReports(self):
        for policy in mailadvisor.dmarc.DMARC_POLICIES:
            advice = mailadvisor.dmarc.check_dmarc(f"v=DMARC1; p={policy}")
            self.assertEqual(
                advice[0], mailadvisor.dmarc.DMARC_POLICY_ADVICE[(policy, False)]
            )

    def testDMARCTagPositions(self):
        """v must be the first tag and p the second"""
        advice = mailadvisor.dmarc.check_dmarc("p=none; v=DMARC1")
        self.assertEqual(advice[0], mailadvisor.dmarc.DMARC_POLICY_POSITION)
        self.assertIn(mailadvisor.dmarc.DMARC_BAD_VERSION, advice)
        advice = mailadvisor.dmarc.check_dmarc("v=dmarc1; p=none")
        self.assertEqual(advice[0], mailadvisor.dmarc.DMARC_BAD_VERSION)

    def testDMARCInvalidValues(self):
        advice = mailadvisor.dmarc.check_dmarc(
            "v=DMARC1; p=block; sp=all; pct=150; fo=x"
        )
        self.assertEqual(
            advice[:4],
            [
                mailadvisor.dmarc.DMARC_INVALID_POLICY,
                mailadvisor.dmarc.DMARC_INVALID_SUBDOMAIN_POLICY,
                mailadvisor.dmarc.DMARC_INVALID_PERCENTAGE,
                mailadvisor.dmarc.DMARC_INVALID_FAILURE_OPTIONS,
            ],
        )
        advice = mailadvisor.dmarc.check_dmarc("v=DMARC1; p=none; pct=abc")
        self.assertIn(mailadvisor.dmarc.DMARC_INVALID_PERCENTAGE, advice)
        for pct in ("pct= 50", "pct=5_0", "pct=\u0665\u0660"):
            advice = mailadvisor.dmarc.check_dmarc(f"v=DMARC1; p=none; {pct}")
            self.assertIn(mailadvisor.dmarc.DMARC_INVALID_PERCENTAGE, advice, pct)

    def testDMARCReportInterval(self):
        """An unparsable interval only gets the parse advice"""
        advice = mailadvisor.dmarc.check_dmarc("v=DMARC1; p=none; ri=abc")
        self.assertIn(mailadvisor.dmarc.DMARC_INVALID_INTERVAL, advice)
        self.assertNotIn(mailadvisor.dmarc.DMARC_NEGATIVE_INTERVAL, advice)
        for ri in ("ri=1_000", "ri= 60", "ri=\uff16\uff10"):
            advice = mailadvisor.dmarc.check_dmarc(f"v=DMARC1; p=none; {ri}")
            self.assertIn(mailadvisor.dmarc.DMARC_INVALID_INTERVAL, advice, ri)
        advice = mailadvisor.dmarc.check_dmarc("v=DMARC1; p=none; ri=-5")
        self.assertIn(mailadvisor.dmarc.DMARC_NEGATIVE_INTERVAL, advice)
        self.assertNotIn(mailadvisor.dmarc.DMARC_INVALID_INTERVAL, advice)

    def testDMARCCompleteRecord(self):
        """No reminders are added when every optional tag is present"""
        advice = mailadvisor.dmarc.check_dmarc(
            "v=DMARC1; p=quarantine; sp=reject; pct=100; "
            "rua=mailto:agg@example.com,mailto:agg2@example.com; "
            "ruf=mailto:forensic@example.com; fo=1; adkim=s; aspf=r; ri=86400"
        )
        self.assertEqual(
            advice, [mailadvisor.dmarc.DMARC_POLICY_ADVICE[("quarantine", True)]]
        )

    def testDMARCTagParsing(self):
        """Tags keep their position, and parts without = are skipped"""
        tags = mailadvisor.dmarc.parse_dmarc_tags("v=DMARC1; junk; p=none; rua=a=b")
        self.assertEqual(
            tags,
            [
                mailadvisor.dmarc.DMARCTag(0, "v", "DMARC1"),
                mailadvisor.dmarc.DMARCTag(2, "p", "none"),
                mailadvisor.dmarc.DMARCTag(3, "rua", "a=b"),
            ],
        )

    def testValidateEmail(self):
        validate_email = mailadvisor.utils.validate_email
        self.assertTrue(validate_email("dmarc@example.com"))
        self.assertTrue(validate_email("a@b"))
        self.assertTrue(validate_email("first.last+tag@sub.example.co.uk"))
        self.assertFalse(validate_email("ab"))
        self.assertFalse(validate_email("example.com"))
        self.assertFalse(validate_email("a@-example.com"))
        self.assertFalse(validate_email("a@example..com"))
        self.assertFalse(validate_email("a@example.com."))
        self.assertFalse(validate_email("a@" + "b" * 253))

    def testBIMIMissingAndMalformed(self):
        session = mock.Mock()
        self.assertEqual(
            mailadvisor.bimi.check_bimi("", session=session),
            [mailadvisor.bimi.BIMI_MISSING],
        )
        self.assertEqual(
            mailadvisor.bimi.check_bimi(
                "v=BIMI1 l=https://example.com/logo.svg", session=session
            ),
            [mailadvisor.bimi.BIMI_MALFORMED],
        )
        session.head.assert_not_called()

    def testBIMIUnreachableLogo(self):
        """A logo that can't be downloaded was still found"""
        session = mock.Mock()
        session.head.return_value = _response(404)
        advice = mailadvisor.bimi.check_bimi(
            "v=BIMI1; l=https://example.com/logo.svg", session=session
        )
        self.assertEqual(
            advice,
            [
                mailadvisor.bimi.BIMI_ISSUES,
                mailadvisor.bimi.BIMI_LOGO_UNAVAILABLE,
                mailadvisor.bimi.BIMI_VMC_MISSING,
            ],
        )
        self.assertNotIn(mailadvisor.bimi.BIMI_LOGO_MISSING, advice)

    def testBIMIAssetChecks(self):
        session = mock.Mock()
        session.head.side_effect = [
            _response(200, 40000),
            requests.exceptions.ConnectionError("connection refused"),
        ]
        advice = mailadvisor.bimi.check_bimi(
            "v=BIMI1; l=https://example.com/logo.svg; "
            "a=https://example.com/vmc.pem",
            session=session,
        )
        self.assertEqual(
            advice,
            [
                mailadvisor.bimi.BIMI_ISSUES,
                mailadvisor.bimi.BIMI_LOGO_TOO_LARGE,
                mailadvisor.bimi.BIMI_VMC_UNAVAILABLE,
            ],
        )
        urls = [call.args[0] for call in session.head.call_args_list]
        self.assertEqual(
            urls, ["https://example.com/logo.svg", "https://example.com/vmc.pem"]
        )

    def testBIMIValid(self):
        session = mock.Mock()
        session.head.return_value = _response(200, 1024)
        advice = mailadvisor.bimi.check_bimi(
            "v=BIMI1; l=https://example.com/logo.svg; "
            "a=https://example.com/vmc.pem",
            session=session,
        )
        self.assertEqual(advice, [mailadvisor.bimi.BIMI_OK])

    def testBIMIWrongVersion(self):
        session = mock.Mock()
        session.head.return_value = _response(200)
        advice = mailadvisor.bimi.check_bimi(
            "v=bimi1; l=https://example.com/logo.svg; a=https://example.com/vmc.pem",
            session=session,
        )
        self.assertEqual(
            advice,
            [mailadvisor.bimi.BIMI_ISSUES, mailadvisor.bimi.BIMI_BAD_VERSION],
        )

    @mock.patch("mailadvisor.bimi.requests.Session")
    def testBIMIClosesSession(self, session_class):
        """A session opened for a single check is closed afterwards"""
        session = session_class.return_value.__enter__.return_value
        session.head.return_value = _response(200, 1024)
        advice = mailadvisor.bimi.check_bimi(
            "v=BIMI1; l=https://example.com/logo.svg; a=https://example.com/vmc.pem"
        )
        self.assertEqual(advice, [mailadvisor.bimi.BIMI_OK])
        self.assertEqual(session.head.call_count, 2)
        session_class.return_value.__exit__.assert_called_once()

    def testTLSVersionAdvice(self):
        check_tls_version = mailadvisor.tls.check_tls_version
        self.assertIn("1.0 which is outdated", check_tls_version("TLSv1"))
        self.assertIn("1.1 which is outdated", check_tls_version("TLSv1.1"))
        self.assertIn("version 1.2, and should be upgraded", check_tls_version("TLSv1.2"))
        self.assertIn("no further action needed", check_tls_version("TLSv1.3"))
        self.assertIn("unrecognized version", check_tls_version("SSLv3"))
        self.assertIn("unrecognized version", check_tls_version(None))

    @mock.patch("mailadvisor.tls._negotiate_tls", return_value="TLSv1.3")
    def testTLSCache(self, negotiate_tls):
        """Repeated TLS checks are served from the cache until it expires"""
        cache = ExpiringDict(max_len=10, max_age_seconds=0.2)
        self.assertEqual(
            mailadvisor.tls.test_tls("example.com.", cache=cache), [TLS13_ADVICE]
        )
        self.assertEqual(
            mailadvisor.tls.test_tls("example.com", cache=cache), [TLS13_ADVICE]
        )
        self.assertEqual(negotiate_tls.call_count, 1)
        time.sleep(0.3)
        mailadvisor.tls.test_tls("example.com", cache=cache)
        self.assertEqual(negotiate_tls.call_count, 2)

    @mock.patch("mailadvisor.tls._negotiate_tls")
    def testTLSUntrustedCertificate(self, negotiate_tls):
        """An untrusted certificate is retried once without verification"""
        negotiate_tls.side_effect = [
            ssl.SSLCertVerificationError("certificate verify failed"),
            "TLSv1.2",
        ]
        cache = ExpiringDict(max_len=10, max_age_seconds=60)
        advice = mailadvisor.tls.test_tls("example.com", cache=cache)
        self.assertEqual(
            advice, [mailadvisor.tls.NO_VALID_CERTIFICATE, TLS12_ADVICE]
        )
        self.assertTrue(negotiate_tls.call_args_list[0].kwargs["verify"])
        self.assertFalse(negotiate_tls.call_args_list[1].kwargs["verify"])
        self.assertEqual(cache.get("example.com"), advice)

    @mock.patch("mailadvisor.tls._negotiate_tls")
    def testTLSUntrustedCertificateRetryFails(self, negotiate_tls):
        negotiate_tls.side_effect = [
            ssl.SSLCertVerificationError("certificate verify failed"),
            ConnectionResetError("reset"),
        ]
        cache = ExpiringDict(max_len=10, max_age_seconds=60)
        advice = mailadvisor.tls.test_tls("example.com", cache=cache)
        self.assertEqual(advice, [mailadvisor.tls.NO_VALID_CERTIFICATE])
        self.assertEqual(cache.get("example.com"), advice)

    @mock.patch("mailadvisor.tls._negotiate_tls")
    def testTLSConnectionErrors(self, negotiate_tls):
        cache = ExpiringDict(max_len=10, max_age_seconds=60)
        negotiate_tls.side_effect = socket.gaierror("Name or service not known")
        self.assertEqual(
            mailadvisor.tls.test_tls("missing.example", cache=cache),
            ["missing.example could not be reached"],
        )
        negotiate_tls.side_effect = ConnectionRefusedError("Connection refused")
        self.assertEqual(
            mailadvisor.tls.test_tls("refused.example", cache=cache),
            ["Failed to reach domain: Connection refused"],
        )
        self.assertEqual(
            cache.get("refused.example"),
            ["Failed to reach domain: Connection refused"],
        )

    @mock.patch("mailadvisor.tls._starttls", return_value="TLSv1.3")
    @mock.patch("mailadvisor.tls._smtp_connect")
    def testSTARTTLS(self, smtp_connect, starttls):
        cache = ExpiringDict(max_len=10, max_age_seconds=60)
        advice = mailadvisor.tls.test_starttls("mx.example.com.", cache=cache)
        self.assertEqual(advice, [TLS13_ADVICE])
        smtp_connect.assert_called_once_with("mx.example.com", mock.ANY)
        mailadvisor.tls.test_starttls("mx.example.com", cache=cache)
        self.assertEqual(smtp_connect.call_count, 1)

    @mock.patch("mailadvisor.tls._starttls")
    @mock.patch("mailadvisor.tls._smtp_connect")
    def testSTARTTLSConnectionErrors(self, smtp_connect, starttls):
        cache = ExpiringDict(max_len=10, max_age_seconds=60)
        smtp_connect.side_effect = TimeoutError("timed out")
        self.assertEqual(
            mailadvisor.tls.test_starttls("slow.example", cache=cache),
            [mailadvisor.tls.REACH_TIMED_OUT],
        )
        smtp_connect.side_effect = ConnectionRefusedError("refused")
        self.assertEqual(
            mailadvisor.tls.test_starttls("refused.example", cache=cache),
            [mailadvisor.tls.REACH_FAILED],
        )
        smtp_connect.side_effect = smtplib.SMTPConnectError(554, b"Not allowed")
        self.assertEqual(
            mailadvisor.tls.test_starttls("rude.example", cache=cache),
            [mailadvisor.tls.REACH_FAILED],
        )
        smtp_connect.side_effect = smtplib.SMTPServerDisconnected(
            "Connection unexpectedly closed"
        )
        self.assertEqual(
            mailadvisor.tls.test_starttls("silent.example", cache=cache),
            [mailadvisor.tls.REACH_FAILED],
        )
        starttls.assert_not_called()
        self.assertEqual(
            cache.get("slow.example"), [mailadvisor.tls.REACH_TIMED_OUT]
        )

    @mock.patch("mailadvisor.tls._starttls")
    @mock.patch("mailadvisor.tls._smtp_connect")
    def testSTARTTLSUntrustedCertificate(self, smtp_connect, starttls):
        """An untrusted certificate is retried once on a new connection"""
        cache = ExpiringDict(max_len=10, max_age_seconds=60)
        starttls.side_effect = [
            ssl.SSLCertVerificationError("certificate verify failed"),
            "TLSv1.2",
        ]
        advice = mailadvisor.tls.test_starttls("mx.example.com", cache=cache)
        self.assertEqual(
            advice, [mailadvisor.tls.NO_VALID_CERTIFICATE, TLS12_ADVICE]
        )
        self.assertEqual(smtp_connect.call_count, 2)
        self.assertEqual(
            [call.kwargs["verify"] for call in starttls.call_args_list],
            [True, False],
        )

        starttls.side_effect = [
            ssl.SSLCertVerificationError("certificate verify failed"),
            ssl.SSLError("handshake failure"),
        ]
        advice = mailadvisor.tls.test_starttls("mx2.example.com", cache=cache)
        self.assertEqual(
            advice,
            [mailadvisor.tls.NO_VALID_CERTIFICATE, mailadvisor.tls.STARTTLS_FAILED],
        )

        smtp_connect.reset_mock()
        smtp_connect.side_effect = [mock.Mock(), ConnectionResetError("reset")]
        starttls.side_effect = [
            ssl.SSLCertVerificationError("certificate verify failed"),
        ]
        advice = mailadvisor.tls.test_starttls("mx3.example.com", cache=cache)
        self.assertEqual(advice, [mailadvisor.tls.REACH_FAILED])
        self.assertEqual(cache.get("mx3.example.com"), advice)

    @mock.patch("mailadvisor.tls._starttls")
    @mock.patch("mailadvisor.tls._smtp_connect")
    def testSTARTTLSNotSupported(self, smtp_connect, starttls):
        cache = ExpiringDict(max_len=10, max_age_seconds=60)
        starttls.side_effect = smtplib.SMTPNotSupportedError(
            "STARTTLS extension not supported by server."
        )
        advice = mailadvisor.tls.test_starttls("mx.example.com", cache=cache)
        self.assertEqual(
            advice,
            [
                "Failed to start TLS connection: "
                "STARTTLS extension not supported by server."
            ],
        )
        self.assertEqual(smtp_connect.call_count, 1)

    @mock.patch("mailadvisor.test_tls")
    def testConsumerDomain(self, test_tls):
        """Consumer mail provider domains are never connected to"""
        advisor = mailadvisor.Advisor(check_tls=True)
        self.assertEqual(
            advisor.check_domain("gmail.com"), [mailadvisor.CONSUMER_DOMAIN]
        )
        test_tls.assert_not_called()

    @mock.patch("mailadvisor.test_tls")
    def testCheckDomain(self, test_tls):
        test_tls.return_value = [TLS12_ADVICE]
        advisor = mailadvisor.Advisor(timeout=3.0, check_tls=True)
        self.assertEqual(advisor.check_domain("example.com"), [TLS12_ADVICE])
        test_tls.assert_called_once_with(
            "example.com", 443, timeout=3.0, cache=advisor.tls_cache_host
        )
        advisor = mailadvisor.Advisor(check_tls=False)
        self.assertEqual(advisor.check_domain("example.com"), [mailadvisor.DOMAIN_OK])

    @mock.patch("mailadvisor.test_starttls")
    def testCheckMXWithoutHosts(self, test_starttls):
        advisor = mailadvisor.Advisor(check_tls=True)
        self.assertEqual(advisor.check_mx([]), [mailadvisor.MX_MISSING])
        test_starttls.assert_not_called()

    @mock.patch("mailadvisor.test_starttls")
    def testCheckMX(self, test_starttls):
        advisor = mailadvisor.Advisor(check_tls=False)
        self.assertEqual(advisor.check_mx(["mx.example.com"]), [mailadvisor.MX_SINGLE])
        self.assertEqual(
            advisor.check_mx(["mx1.example.com", "mx2.example.com"]),
            [mailadvisor.MX_MULTIPLE],
        )
        test_starttls.assert_not_called()

        advisor = mailadvisor.Advisor(check_tls=True)
        test_starttls.return_value = [mailadvisor.tls.NO_VALID_CERTIFICATE, TLS12_ADVICE]
        self.assertEqual(
            advisor.check_mx(["mx.example.com."]),
            [
                mailadvisor.MX_SINGLE,
                f"mx.example.com: {mailadvisor.tls.NO_VALID_CERTIFICATE}",
                f"mx.example.com: {TLS12_ADVICE}",
            ],
        )

    @mock.patch("mailadvisor.test_starttls", return_value=[TLS13_ADVICE])
    def testCheckMXAllTLS13(self, test_starttls):
        """Mail servers that all use TLS 1.3 collapse into one line"""
        advisor = mailadvisor.Advisor(check_tls=True)
        self.assertEqual(
            advisor.check_mx(["mx1.example.com.", "mx2.example.com."]),
            [mailadvisor.MX_ALL_TLS13],
        )
        self.assertEqual(
            advisor.check_mx(["mx1.example.com."]), [mailadvisor.MX_ALL_TLS13]
        )
        hostnames = [call.args[0] for call in test_starttls.call_args_list]
        self.assertEqual(
            hostnames, ["mx1.example.com", "mx2.example.com", "mx1.example.com"]
        )

    def testCheckAll(self):
        advisor = mailadvisor.Advisor(check_tls=False)
        advice = advisor.check_all(
            "example.com",
            "",
            "v=DKIM1; k=rsa; p=ABC",
            "v=DMARC1;p=reject;rua=mailto:a@b.com",
            [],
            "v=spf1 -all",
        )
        self.assertEqual(list(advice.keys()), mailadvisor.ADVICE_FIELDS)
        self.assertEqual(advice["domain"], [mailadvisor.DOMAIN_OK])
        self.assertEqual(advice["bimi"], [mailadvisor.bimi.BIMI_MISSING])
        self.assertEqual(advice["dkim"], [mailadvisor.dkim.DKIM_OK])
        self.assertEqual(advice["mx"], [mailadvisor.MX_MISSING])
        self.assertEqual(advice["spf"], [mailadvisor.spf.SPF_OK])
        self.assertEqual(
            advice["dmarc"][0],
            mailadvisor.dmarc.DMARC_POLICY_ADVICE[("reject", True)],
        )

    @mock.patch("mailadvisor.check_dkim", side_effect=RuntimeError("boom"))
    def testCheckAllIsolatesFailures(self, check_dkim):
        """A check that raises doesn't keep the other checks from running"""
        advisor = mailadvisor.Advisor(check_tls=False)
        advice = advisor.check_all(
            "example.com",
            "",
            "v=DKIM1; k=rsa; p=ABC",
            "v=DMARC1;p=reject;rua=mailto:a@b.com",
            [],
            "v=spf1 -all",
        )
        self.assertEqual(list(advice.keys()), mailadvisor.ADVICE_FIELDS)
        self.assertEqual(advice["dkim"], ["The dkim check could not be completed: boom"])
        self.assertEqual(advice["domain"], [mailadvisor.DOMAIN_OK])
        self.assertEqual(advice["bimi"], [mailadvisor.bimi.BIMI_MISSING])
        self.assertEqual(advice["mx"], [mailadvisor.MX_MISSING])
        self.assertEqual(advice["spf"], [mailadvisor.spf.SPF_OK])
        self.assertEqual(
            advice["dmarc"][0],
            mailadvisor.dmarc.DMARC_POLICY_ADVICE[("reject", True)],
        )
        check_dkim.assert_called_once_with("v=DKIM1; k=rsa; p=ABC")

    @mock.patch("mailadvisor.get_mx_records")
    @mock.patch("mailadvisor.get_txt_records")
    def testGetRecords(self, get_txt_records, get_mx_records):
        txt_records = {
            "example.com": ["google-site-verification=abc", "v=spf1 -all"],
            "_dmarc.example.com": ["v=DMARC1; p=none"],
            "default._bimi.example.com": [],
            "google._domainkey.example.com": ["v=DKIM1; k=rsa; p=ABC"],
        }
        get_txt_records.side_effect = lambda name, **kwargs: txt_records.get(name, [])
        get_mx_records.return_value = [
            {"preference": 10, "hostname": "mx1.example.com"},
            {"preference": 20, "hostname": "mx2.example.com"},
        ]
        records = mailadvisor.get_records(
            "example.com", dkim_selectors=["selector1", "google", "k1"]
        )
        self.assertEqual(
            records,
            {
                "bimi": "",
                "dkim": "v=DKIM1; k=rsa; p=ABC",
                "dmarc": "v=DMARC1; p=none",
                "mx": ["mx1.example.com", "mx2.example.com"],
                "spf": "v=spf1 -all",
            },
        )
        names = [call.args[0] for call in get_txt_records.call_args_list]
        self.assertNotIn("k1._domainkey.example.com", names)

    @mock.patch("mailadvisor.get_records")
    def testCheckDomains(self, get_records):
        get_records.return_value = {
            "bimi": "",
            "dkim": "",
            "dmarc": "",
            "mx": [],
            "spf": "",
        }
        advisor = mailadvisor.Advisor(check_tls=False)
        results = mailadvisor.check_domains(
            ["Example.com.", "example.com", "localhost"], advisor=advisor
        )
        self.assertIsInstance(results, dict)
        self.assertEqual(results["domain"], "example.com")
        self.assertEqual(results["advice"]["spf"], [mailadvisor.spf.SPF_MISSING])
        get_records.assert_called_once()

        get_records.side_effect = DNSException("The DNS operation timed out.")
        results = mailadvisor.check_domains(
            ["example.com", "example.net"], advisor=advisor
        )
        self.assertEqual(len(results), 2)
        self.assertEqual(results[1]["error"], "The DNS operation timed out.")

    def testResultsToJSON(self):
        """Empty advice fields are omitted from JSON output"""
        results = {
            "domain": "example.com",
            "records": {"bimi": "", "dkim": "", "dmarc": "", "mx": [], "spf": ""},
            "advice": {
                "domain": [],
                "bimi": [],
                "dkim": [],
                "dmarc": [],
                "mx": [mailadvisor.MX_MISSING],
                "spf": [mailadvisor.spf.SPF_MISSING],
            },
        }
        output = json.loads(mailadvisor.results_to_json(results))
        self.assertEqual(list(output["advice"].keys()), ["mx", "spf"])
        self.assertEqual(results["advice"]["domain"], [])

        csv = mailadvisor.results_to_csv(results)
        self.assertTrue(csv.startswith("domain,error,"))
        self.assertIn(mailadvisor.spf.SPF_MISSING, csv)

    @unittest.skip
    def testKnownGood(self):
        """A domain with SPF, DMARC and MX records"""
        records = mailadvisor.get_records("fbi.gov")
        self.assertTrue(records["spf"].startswith("v=spf1"))
        self.assertTrue(records["dmarc"].lower().startswith("v=dmarc1"))
        self.assertGreater(len(records["mx"]), 0)


def _self_signed_certificate(directory):
    """Writes a certificate for 127.0.0.1 that no trust store knows about"""
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "localhost")])
    now = datetime.datetime.now(datetime.timezone.utc)
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=1))
        .add_extension(
            x509.SubjectAlternativeName(
                [
                    x509.DNSName("localhost"),
                    x509.IPAddress(ipaddress.ip_address("127.0.0.1")),
                ]
            ),
            critical=False,
        )
        .sign(key, hashes.SHA256())
    )
    cert_path = os.path.join(directory, "cert.pem")
    key_path = os.path.join(directory, "key.pem")
    with open(cert_path, "wb") as cert_file:
        cert_file.write(certificate.public_bytes(serialization.Encoding.PEM))
    with open(key_path, "wb") as key_file:
        key_file.write(
            key.private_bytes(
                serialization.Encoding.PEM,
                serialization.PrivateFormat.PKCS8,
                serialization.NoEncryption(),
            )
        )
    return cert_path, key_path


def _read_line(sock):
    line = b""
    while not line.endswith(b"\n"):
        chunk = sock.recv(1)
        if not chunk:
            break
        line += chunk
    return line.strip().upper()


def _serve_tls(context, conn):
    with context.wrap_socket(conn, server_side=True):
        pass


def _serve_smtp(context, conn):
    conn.sendall(b"220 localhost ESMTP\r\n")
    while True:
        command = _read_line(conn)
        if command.startswith((b"EHLO", b"HELO")):
            conn.sendall(b"250-localhost\r\n250 STARTTLS\r\n")
        elif command == b"STARTTLS":
            conn.sendall(b"220 Ready to start TLS\r\n")
            break
        else:
            conn.sendall(b"221 Bye\r\n")
            return
    with context.wrap_socket(conn, server_side=True) as tls_conn:
        if _read_line(tls_conn) == b"QUIT":
            tls_conn.sendall(b"221 Bye\r\n")


class _LocalServer(threading.Thread):
    """Accepts connections on 127.0.0.1 one at a time until stopped"""

    def __init__(self, context, handler):
        super().__init__(daemon=True)
        self.context = context
        self.handler = handler
        self.listener = socket.create_server(("127.0.0.1", 0))
        self.listener.settimeout(0.2)
        self.port = self.listener.getsockname()[1]
        self.stopped = threading.Event()

    def run(self):
        while not self.stopped.is_set():
            try:
                conn, _ = self.listener.accept()
            except socket.timeout:
                continue
            except OSError:
                break
            with conn:
                conn.settimeout(5)
                try:
                    self.handler(self.context, conn)
                except OSError:
                    # Clients that refuse the certificate abort the handshake
                    pass

    def stop(self):
        self.stopped.set()
        self.join()
        self.listener.close()


class LoopbackTest(unittest.TestCase):
    """Real handshakes against local servers with a self-signed certificate"""

    @classmethod
    def setUpClass(cls):
        cls.directory = tempfile.TemporaryDirectory()
        cert_path, key_path = _self_signed_certificate(cls.directory.name)
        cls.context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        # Pinned so the expected version advice doesn't depend on OpenSSL
        cls.context.minimum_version = ssl.TLSVersion.TLSv1_3
        cls.context.maximum_version = ssl.TLSVersion.TLSv1_3
        cls.context.load_cert_chain(cert_path, key_path)

    @classmethod
    def tearDownClass(cls):
        cls.directory.cleanup()

    def _start(self, handler):
        server = _LocalServer(self.context, handler)
        server.start()
        self.addCleanup(server.stop)
        return server

    def testTLSSelfSignedCertificate(self):
        """A self-signed certificate is reported along with the version"""
        server = self._start(_serve_tls)
        cache = ExpiringDict(max_len=10, max_age_seconds=60)
        advice = mailadvisor.tls.test_tls(
            "127.0.0.1", server.port, timeout=5, cache=cache
        )
        self.assertEqual(advice, [mailadvisor.tls.NO_VALID_CERTIFICATE, TLS13_ADVICE])
        self.assertEqual(cache.get("127.0.0.1"), advice)

    def testSTARTTLSSelfSignedCertificate(self):
        """STARTTLS is retried without verification on a new connection"""
        server = self._start(_serve_smtp)
        cache = ExpiringDict(max_len=10, max_age_seconds=60)
        with mock.patch("mailadvisor.tls.SMTP_PORT", server.port):
            advice = mailadvisor.tls.test_starttls("127.0.0.1", timeout=5, cache=cache)
        self.assertEqual(advice, [mailadvisor.tls.NO_VALID_CERTIFICATE, TLS13_ADVICE])
        self.assertEqual(cache.get("127.0.0.1"), advice)

    def testSTARTTLSRefused(self):
        """A closed port is reported as unreachable"""
        server = self._start(_serve_smtp)
        port = server.port
        server.stop()
        with mock.patch("mailadvisor.tls.SMTP_PORT", port):
            advice = mailadvisor.tls.test_starttls(
                "127.0.0.1",
                timeout=5,
                cache=ExpiringDict(max_len=10, max_age_seconds=60),
            )
        self.assertEqual(advice, [mailadvisor.tls.REACH_FAILED])


if __name__ == "__main__":
    unittest.main(verbosity=2)
