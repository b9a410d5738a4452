# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

from .xml import (
    AnnotatedXMLElement,
    Attribute,
    ConfigurationError,
    IntegerAdapter,
    MultiElement,
    Namespace,
    NonNegativeFloatAdapter,
    OptionalAttribute,
    OptionalDataElement,
    PortAdapter,
    PositiveFloatAdapter,
    PositiveIntegerAdapter,
)

__all__ = 'NodeConfiguration', 'BootstrapPeer', 'ConfigurationError'  # noqa: RUF022


ns_node = Namespace('urn:meshrelay:params:xml:ns:node-config', schema='node.rng', prefix=None)


class TTLAdapter(IntegerAdapter, min_value=0, max_value=7, name='message TTL'):
    pass


class NodeElement(AnnotatedXMLElement, namespace=ns_node):
    pass


class BootstrapPeer(NodeElement, name='bootstrap-peer'):
    address: Attribute[str] = Attribute(str)
    port: OptionalAttribute[int] = OptionalAttribute(int, default=8888, adapter=PortAdapter)


class NodeConfiguration(NodeElement, name='node'):
    """
    The settings of a mesh node.

    Every setting is optional. A missing nickname means the node is named
    after its listening port and a port of 0 picks any free port. Timeouts
    and intervals are in seconds and a ping interval of 0 disables the
    keep-alive pings.
    """

    nickname: OptionalAttribute[str] = OptionalAttribute(str, default=None)
    port: OptionalAttribute[int] = OptionalAttribute(int, default=8888, adapter=PortAdapter)

    listen_address: OptionalDataElement[str] = OptionalDataElement(str, name='listen-address', default='0.0.0.0')  # noqa: S104
    default_ttl: OptionalDataElement[int] = OptionalDataElement(int, name='default-ttl', default=3, adapter=TTLAdapter)
    connect_timeout: OptionalDataElement[float] = OptionalDataElement(float, name='connect-timeout', default=10.0, adapter=PositiveFloatAdapter)
    stale_timeout: OptionalDataElement[float] = OptionalDataElement(float, name='stale-timeout', default=300.0, adapter=PositiveFloatAdapter)
    sweep_interval: OptionalDataElement[float] = OptionalDataElement(float, name='sweep-interval', default=60.0, adapter=PositiveFloatAdapter)
    ping_interval: OptionalDataElement[float] = OptionalDataElement(float, name='ping-interval', default=60.0, adapter=NonNegativeFloatAdapter)
    dedup_capacity: OptionalDataElement[int] = OptionalDataElement(int, name='dedup-capacity', default=10000, adapter=PositiveIntegerAdapter)

    bootstrap_peers: MultiElement[BootstrapPeer] = MultiElement(BootstrapPeer)
