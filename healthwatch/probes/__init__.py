"""Probe implementations behind the ProbeGateway interface."""

from healthwatch.probes.gateway import (
    DefaultProbeGateway,
    probe_dns,
    probe_http,
    probe_script,
    probe_tcp,
)

__all__ = ["DefaultProbeGateway", "probe_dns", "probe_http", "probe_script", "probe_tcp"]
