import socket

import pytest

from harness.utils.addr import family_for, format_source, parse_addr, sockaddr_key


def test_parse_ipv4_and_hostnames():
    assert parse_addr("127.0.0.1:9001") == ("127.0.0.1", 9001)
    assert parse_addr("localhost:80") == ("localhost", 80)
    assert parse_addr(":9001") == ("", 9001)


def test_parse_bracketed_ipv6():
    assert parse_addr("[::1]:9001") == ("::1", 9001)


@pytest.mark.parametrize("bad", ["", "127.0.0.1", "127.0.0.1:x", "::1:9001", "[::1]9001", "host:70000"])
def test_parse_rejects_malformed(bad):
    with pytest.raises(ValueError):
        parse_addr(bad)


def test_format_source_brackets_ipv6():
    assert format_source("127.0.0.1", 9002) == "127.0.0.1:9002"
    assert format_source("::1", 9002) == "[::1]:9002"
    assert sockaddr_key(("::1", 9002, 0, 0)) == "[::1]:9002"


def test_family_for():
    assert family_for("127.0.0.1") == socket.AF_INET
    assert family_for("::1") == socket.AF_INET6
