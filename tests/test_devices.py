"""Tests for device labels and client fingerprints."""

import pytest

from tokengate.service.devices import client_fingerprint, device_label
from tokengate.service.errors import BadRequestError

CHROME_WINDOWS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
EDGE_WINDOWS = CHROME_WINDOWS + " Edg/120.0.2210.91"
SAFARI_MAC = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_2) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.2 Safari/605.1.15"
)
SAFARI_IPHONE = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_2 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.2 Mobile/15E148 Safari/604.1"
)
FIREFOX_LINUX = "Mozilla/5.0 (X11; Linux x86_64; rv:121.0) Gecko/20100101 Firefox/121.0"
CHROME_ANDROID = (
    "Mozilla/5.0 (Linux; Android 14; Pixel 8) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Mobile Safari/537.36"
)
OPERA_WINDOWS = CHROME_WINDOWS + " OPR/106.0.0.0"


@pytest.mark.parametrize(
    "user_agent,expected",
    [
        (CHROME_WINDOWS, "Windows:Google Chrome"),
        (EDGE_WINDOWS, "Windows:Microsoft Edge"),
        (OPERA_WINDOWS, "Windows:Opera"),
        (SAFARI_MAC, "Mac:Safari"),
        (SAFARI_IPHONE, "iPhone:Safari"),
        (FIREFOX_LINUX, "Linux:Mozilla Firefox"),
        (CHROME_ANDROID, "Android:Google Chrome"),
        ("curl/8.4.0", "Unknown:Unknown"),
    ],
)
def test_device_label(user_agent, expected):
    assert device_label(user_agent) == expected


@pytest.mark.parametrize("user_agent", [None, "", "   "])
def test_missing_user_agent_has_empty_label(user_agent):
    assert device_label(user_agent) == ""


class TestClientFingerprint:
    """Tests for client_fingerprint."""

    def test_optional_allows_missing_parts(self):
        fingerprint = client_fingerprint(None, None, required=False)

        assert fingerprint.ip_address == ""
        assert fingerprint.device == ""

    def test_required_accepts_complete_fingerprint(self):
        fingerprint = client_fingerprint(" 198.51.100.4 ", CHROME_WINDOWS, required=True)

        assert fingerprint.ip_address == "198.51.100.4"
        assert fingerprint.device == "Windows:Google Chrome"

    @pytest.mark.parametrize(
        "ip_address,user_agent", [(None, CHROME_WINDOWS), ("198.51.100.4", None)]
    )
    def test_required_rejects_missing_parts(self, ip_address, user_agent):
        with pytest.raises(BadRequestError):
            client_fingerprint(ip_address, user_agent, required=True)
