from types import SimpleNamespace

from src.utils.request_utils import extract_ip_from_headers, get_client_ip


class TestExtractIpFromHeaders:
    def test_forwarded_for_takes_priority(self) -> None:
        headers = {"X-Real-IP": "9.9.9.9", "X-Forwarded-For": "1.1.1.1, 2.2.2.2"}
        assert extract_ip_from_headers(headers) == "1.1.1.1"

    def test_first_forwarded_for_entry(self) -> None:
        assert extract_ip_from_headers({"x-forwarded-for": " 1.1.1.1 , 2.2.2.2"}) == "1.1.1.1"

    def test_real_ip_when_no_forwarded_for(self) -> None:
        assert extract_ip_from_headers({"X-Real-IP": " 9.9.9.9 "}) == "9.9.9.9"

    def test_empty_forwarded_for_falls_back(self) -> None:
        assert extract_ip_from_headers({"X-Forwarded-For": " , "}) == "unknown"

    def test_no_headers(self) -> None:
        assert extract_ip_from_headers({}) == "unknown"


class TestGetClientIp:
    def test_uses_peer_address_without_proxy_headers(self) -> None:
        request = SimpleNamespace(headers={}, client=SimpleNamespace(host="10.0.0.5"))
        assert get_client_ip(request) == "10.0.0.5"

    def test_headers_win_over_peer_address(self) -> None:
        request = SimpleNamespace(
            headers={"X-Forwarded-For": "3.3.3.3"}, client=SimpleNamespace(host="10.0.0.5")
        )
        assert get_client_ip(request) == "3.3.3.3"

    def test_unknown_when_nothing_available(self) -> None:
        request = SimpleNamespace(headers={}, client=None)
        assert get_client_ip(request) == "unknown"
