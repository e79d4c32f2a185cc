"""
OTP Pipeline — Number Provider Tests

JasaOtpProvider against an httpx.MockTransport, so no network is used.
"""

import os
import sys
import unittest

import httpx

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from core.config import Settings
from core.exceptions import NoOtpYet, ProviderError
from core.providers import AcquiredNumber, JasaOtpProvider, NumberProvider, extract_otp


def _provider(handler):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return JasaOtpProvider(api_key="k-123", client=client)


class TestExtractOtp(unittest.TestCase):

    def test_first_run_of_digits(self):
        self.assertEqual(extract_otp("Kode OTP Anda 482913. Jangan berikan"), "482913")

    def test_too_short(self):
        self.assertIsNone(extract_otp("code 123"))

    def test_long_run_truncated(self):
        self.assertEqual(extract_otp("1234567890"), "12345678")

    def test_none(self):
        self.assertIsNone(extract_otp(None))


class TestAcquireNumber(unittest.TestCase):

    def test_success(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["params"] = dict(request.url.params)
            return httpx.Response(200, json={
                "success": True, "data": {"order_id": 991, "number": "6281122334455"},
            })

        num = _provider(handler).acquire_number()
        self.assertEqual(num, AcquiredNumber(order_id="991", phone="081122334455"))
        self.assertTrue(seen["path"].endswith("/order.php"))
        self.assertEqual(seen["params"]["api_key"], "k-123")
        self.assertEqual(seen["params"]["negara"], "6")
        self.assertEqual(seen["params"]["layanan"], "bnt")
        self.assertEqual(seen["params"]["operator"], "any")

    def test_upstream_refusal(self):
        provider = _provider(lambda r: httpx.Response(200, json={
            "success": False, "message": "saldo tidak cukup",
        }))
        with self.assertRaises(ProviderError) as ctx:
            provider.acquire_number()
        self.assertIn("saldo tidak cukup", str(ctx.exception))

    def test_missing_fields(self):
        provider = _provider(lambda r: httpx.Response(200, json={"success": True, "data": {}}))
        with self.assertRaises(ProviderError):
            provider.acquire_number()

    def test_unusable_number(self):
        provider = _provider(lambda r: httpx.Response(200, json={
            "success": True, "data": {"order_id": 1, "number": "12345"},
        }))
        with self.assertRaises(ProviderError):
            provider.acquire_number()

    def test_http_error(self):
        provider = _provider(lambda r: httpx.Response(500, text="boom"))
        with self.assertRaises(ProviderError) as ctx:
            provider.acquire_number()
        self.assertIn("500", str(ctx.exception))

    def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with self.assertRaises(ProviderError):
            _provider(handler).acquire_number()

    def test_invalid_json(self):
        provider = _provider(lambda r: httpx.Response(200, text="<html>"))
        with self.assertRaises(ProviderError):
            provider.acquire_number()


class TestFetchOtp(unittest.TestCase):

    def test_code_ready(self):
        def handler(request):
            self.assertEqual(request.url.params["id"], "991")
            return httpx.Response(200, json={"success": True, "data": {"otp": "Your code: 5521"}})

        self.assertEqual(_provider(handler).fetch_otp("991"), "5521")

    def test_not_yet(self):
        provider = _provider(lambda r: httpx.Response(200, json={"success": False}))
        with self.assertRaises(NoOtpYet):
            provider.fetch_otp("991")

    def test_no_digits_yet(self):
        provider = _provider(lambda r: httpx.Response(200, json={
            "success": True, "data": {"otp": "menunggu"},
        }))
        with self.assertRaises(NoOtpYet):
            provider.fetch_otp("991")

    def test_no_otp_is_a_provider_error(self):
        provider = _provider(lambda r: httpx.Response(200, json={"success": False}))
        with self.assertRaises(ProviderError):
            provider.fetch_otp("991")


class TestFromSettings(unittest.TestCase):

    def test_settings_applied(self):
        settings = Settings.from_config({"provider": {
            "api_key": "abc", "country": "7", "service": "wa", "base_url": "https://x.test/v1/",
        }})
        provider = JasaOtpProvider.from_settings(settings)
        self.assertEqual(provider.api_key, "abc")
        self.assertEqual(provider.country, 7)
        self.assertEqual(provider.service, "wa")
        self.assertEqual(provider.base_url, "https://x.test/v1")
        self.assertIsInstance(provider, NumberProvider)


if __name__ == "__main__":
    unittest.main()
