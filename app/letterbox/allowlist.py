#!/usr/bin/env python
#
"""
The allowlist of client addresses that are allowed to hand us mail.

The allowlist is built once at startup from the `hosts` entries in the
configuration file. Each entry is one of:

- a network in CIDR notation, ie: `192.168.101.0/24`
- a single ip address, ie: `192.168.103.15`
- a hostname, ie: `fozzy.example.com`. Hostnames are resolved when the
  allowlist is built and every address they resolve to is trusted. Names that
  do not resolve are skipped.

Once built it is never modified, so it can be shared by every SMTP session
without any locking.
"""
# system imports
#
import ipaddress
import logging
import socket
from typing import Iterable, List, Optional, Tuple, Union

# Project imports
#
from .exceptions import AdmissionDenied

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]

logger = logging.getLogger("letterbox.allowlist")


####################################################################
#
def resolve_hostname(hostname: str) -> List[IPAddress]:
    """
    Return all of the ip addresses `hostname` resolves to, in the order the
    resolver gave them to us without duplicates. An empty list is returned if
    the name can not be resolved.
    """
    try:
        infos = socket.getaddrinfo(hostname, None, proto=socket.IPPROTO_TCP)
    except (socket.gaierror, UnicodeError) as exc:
        logger.warning(
            "Unable to resolve allowed host '%s', skipping: %s", hostname, exc
        )
        return []

    addrs: List[IPAddress] = []
    for _, _, _, _, sockaddr in infos:
        # IPv6 sockaddrs may carry a scope id ("fe80::1%eth0")
        #
        addr = parse_client_address(sockaddr[0].split("%", 1)[0])
        if addr is not None and addr not in addrs:
            addrs.append(addr)
    return addrs


####################################################################
#
def parse_client_address(client: str) -> Optional[IPAddress]:
    """
    Turn the peer address reported for a connection in to an ip address.
    IPv4 clients connecting to a dual stack socket show up as IPv4 mapped
    IPv6 addresses. Those are returned as the IPv4 address they map.

    Returns None if `client` is not an ip address.
    """
    try:
        addr = ipaddress.ip_address(client)
    except ValueError:
        return None
    if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped:
        return addr.ipv4_mapped
    return addr


########################################################################
########################################################################
#
class Allowlist:
    """
    Answers the question "is this client allowed to connect?"
    """

    ####################################################################
    #
    def __init__(
        self,
        hosts: Iterable[IPAddress] = (),
        networks: Iterable[IPNetwork] = (),
    ):
        self._hosts: Tuple[IPAddress, ...] = tuple(hosts)
        self._networks: Tuple[IPNetwork, ...] = tuple(networks)

    ####################################################################
    #
    @classmethod
    def from_config(cls, entries: Iterable[str]) -> "Allowlist":
        """
        Build an allowlist from the `hosts` entries of the config file.

        Each entry is tried as a network first, then as an address and last as
        a hostname. The result may well be empty (no entries, or nothing
        resolved) in which case every connection will be rejected.
        """
        hosts: List[IPAddress] = []
        networks: List[IPNetwork] = []
        for entry in entries:
            entry = entry.strip()
            if "/" in entry:
                try:
                    networks.append(ipaddress.ip_network(entry, strict=False))
                    continue
                except ValueError:
                    pass

            # IPv4 mapped entries are stored as the IPv4 address they map,
            # the same as client addresses.
            #
            addr = parse_client_address(entry)
            if addr is not None:
                hosts.append(addr)
                continue

            resolved = resolve_hostname(entry)
            logger.debug("Allowed host '%s' resolved to: %s", entry, resolved)
            hosts.extend(resolved)

        return cls(hosts=hosts, networks=networks)

    ####################################################################
    #
    @property
    def hosts(self) -> Tuple[IPAddress, ...]:
        return self._hosts

    ####################################################################
    #
    @property
    def networks(self) -> Tuple[IPNetwork, ...]:
        return self._networks

    ####################################################################
    #
    def __bool__(self) -> bool:
        return bool(self._hosts or self._networks)

    ####################################################################
    #
    def check(self, client: Union[str, IPAddress, None]) -> None:
        """
        Raises AdmissionDenied if `client` is not allowed to connect. A
        connection whose peer address is unknown is never allowed.
        """
        if client is None or not self.is_allowed(client):
            raise AdmissionDenied(None if client is None else str(client))

    ####################################################################
    #
    def is_allowed(self, client: Union[str, IPAddress]) -> bool:
        """
        Return True if `client` is one of our allowed hosts or falls inside
        one of our allowed networks.

        Keyword Arguments:
        client: Union[str, IPAddress] -- the peer address of the connection
        """
        addr = (
            parse_client_address(client)
            if isinstance(client, str)
            else parse_client_address(str(client))
        )
        if addr is None:
            logger.info("Connection from unparseable address %r", client)
            return False

        for host in self._hosts:
            if host == addr:
                logger.debug("Connection from %s allowed by hosts", addr)
                return True

        for network in self._networks:
            # Membership between different ip versions is simply False
            #
            if addr in network:
                logger.debug(
                    "Connection from %s allowed by network %s", addr, network
                )
                return True

        logger.debug("Connection from %s rejected", addr)
        return False
