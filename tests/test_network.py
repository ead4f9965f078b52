"""Tests for host address discovery."""
import site_network


class FakeNetifaces:
    AF_INET = 2
    AF_INET6 = 10

    def __init__(self, table):
        self.table = table

    def interfaces(self):
        return list(self.table)

    def ifaddresses(self, interface):
        return self.table[interface]


def test_netifaces_addresses(monkeypatch):
    fake = FakeNetifaces({
        "lo": {2: [{"addr": "127.0.0.1"}], 10: [{"addr": "::1"}]},
        "eth0": {2: [{"addr": "10.0.0.7"}], 10: [{"addr": "fe80::1%eth0"}, {"addr": "2001:db8::7"}]},
        "wlan0": {2: [{"addr": "192.168.1.5"}]},
        "docker0": {},
    })
    monkeypatch.setattr(site_network, "netifaces", fake)

    assert site_network.all_ip_addresses() == ["192.168.1.5", "10.0.0.7", "2001:db8::7"]


def test_routed_ip_fallback(monkeypatch):
    monkeypatch.setattr(site_network, "netifaces", None)
    monkeypatch.setattr(site_network, "get_routed_ip", lambda: "10.1.2.3")

    assert site_network.all_ip_addresses() == ["10.1.2.3"]


def test_loopback_when_offline(monkeypatch):
    def offline():
        raise OSError("Network is unreachable")

    monkeypatch.setattr(site_network, "netifaces", None)
    monkeypatch.setattr(site_network, "get_routed_ip", offline)

    assert site_network.all_ip_addresses() == ["127.0.0.1"]
