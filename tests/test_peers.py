# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

import pytest

from meshrelay.peers import PeerInfo, PeerKey, PeerRegistry


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestPeerKey:

    def test_key(self) -> None:
        key = PeerKey('192.168.1.10', 8888)
        assert str(key) == '192.168.1.10:8888'
        assert key == ('192.168.1.10', 8888)
        assert PeerInfo('192.168.1.10', 8888).key == key

    def test_display_name(self) -> None:
        assert PeerInfo('10.0.0.1', 1234).display_name == '10.0.0.1:1234'
        assert PeerInfo('10.0.0.1', 1234, nickname='dave').display_name == 'dave'


class TestPeerRegistry:

    def setup_method(self) -> None:
        self.clock = FakeClock(100.0)
        self.registry = PeerRegistry(clock=self.clock)

    def test_add_and_remove(self) -> None:
        key = PeerKey('10.0.0.1', 8888)
        peer = self.registry.add(key)
        assert peer == PeerInfo('10.0.0.1', 8888, nickname=None, last_seen=100.0, hop_count=1)
        assert key in self.registry
        assert self.registry.get(key) is peer
        assert len(self.registry) == 1
        assert list(self.registry) == [peer]

        with pytest.raises(KeyError):
            self.registry.add(key)

        assert self.registry.remove(key) is peer
        assert self.registry.remove(key) is None
        assert key not in self.registry
        assert self.registry.get(key) is None

    def test_updates(self) -> None:
        key = PeerKey('10.0.0.1', 8888)
        self.registry.add(key)
        self.clock.now = 150.0
        self.registry.touch(key)
        self.registry.set_nickname(key, 'erin')
        peer = self.registry.get(key)
        assert peer is not None
        assert (peer.nickname, peer.last_seen) == ('erin', 150.0)

        # updating unknown peers does nothing
        unknown = PeerKey('10.0.0.9', 1)
        self.registry.touch(unknown)
        self.registry.set_nickname(unknown, 'nobody')
        assert unknown not in self.registry

    def test_stale_peers(self) -> None:
        old = PeerKey('10.0.0.1', 1)
        fresh = PeerKey('10.0.0.2', 2)
        self.registry.add(old)
        self.clock.now = 200.0
        self.registry.add(fresh)
        self.clock.now = 400.0
        assert [peer.key for peer in self.registry.stale_peers(250)] == [old]
        # the threshold itself is not stale yet
        assert self.registry.stale_peers(300) == []
        self.clock.now = 500.5
        assert {peer.key for peer in self.registry.stale_peers(300)} == {old, fresh}

    def test_snapshot(self) -> None:
        key = PeerKey('10.0.0.1', 8888)
        self.registry.add(key)
        snapshot = self.registry.snapshot()
        snapshot[0].nickname = 'changed'
        peer = self.registry.get(key)
        assert peer is not None
        assert peer.nickname is None

    def test_clear(self) -> None:
        self.registry.add(PeerKey('10.0.0.1', 1))
        self.registry.add(PeerKey('10.0.0.2', 2))
        self.registry.clear()
        assert len(self.registry) == 0
