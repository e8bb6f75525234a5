"""Validation of catalog capacity, CRNs and VM shape parameters.

Everything here is pure: no I/O, so it can run before any external call is
made during catalog checks and provisioning.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass

from .models import Capacity

# crn:v1:<cloud>:<type>:<service>:<location>:a/<account>:<guid>::
IBM_RESOURCE_CRN_PATTERN = re.compile(
    r"^crn:v[0-9]:(?P<cloud_name>[^:]*):(?P<cloud_type>[^:]*):(?P<service_name>[^:]*):"
    r"(?P<location>[^:]*):a/(?P<account>[^:]*):(?P<guid>[^:]*)::$"
)

AVAILABLE_SYSTEM_TYPES = ("s922", "e980")
AVAILABLE_PROCESSOR_TYPES = ("dedicated", "shared", "capped")


class ValidationError(Exception):
    """Raised when a declared value is invalid. Never retried automatically."""

    pass


class CapacityValidationError(ValidationError):
    """Raised when a requested capacity exceeds its envelope or cannot be parsed."""

    pass


@dataclass(frozen=True)
class PowerVSCRN:
    """Parts of a PowerVS workspace CRN used to address its APIs."""

    guid: str
    zone: str
    account: str


def parse_powervs_crn(crn: str) -> PowerVSCRN:
    """Extract workspace guid, zone and account from a PowerVS CRN.

    Raises:
        ValidationError: If the CRN does not match the generic IBM CRN shape.
    """
    match = IBM_RESOURCE_CRN_PATTERN.match(crn or "")
    if match is None:
        raise ValidationError(f"could not parse crn with generic crn regex: {crn!r}")
    return PowerVSCRN(
        guid=match.group("guid"),
        zone=match.group("location"),
        account=match.group("account"),
    )


def parse_processors(cpu: str, label: str = "cpu") -> float:
    """Parse a textual fractional core count.

    A value that does not parse is an error; it is never read as zero.

    Raises:
        CapacityValidationError: If ``cpu`` is not a finite, positive number.
    """
    try:
        value = float(cpu)
    except (TypeError, ValueError) as e:
        raise CapacityValidationError(f"error parsing {label} capacity: {cpu!r}") from e
    if not math.isfinite(value) or value <= 0:
        raise CapacityValidationError(f"{label} capacity must be a positive number: {cpu!r}")
    return value


def validate_vm_capacity(envelope: Capacity, requested: Capacity) -> Capacity:
    """Check a requested VM shape against a catalog capacity envelope.

    Unset fields in ``requested`` (empty cpu, zero memory) inherit the
    envelope's value. Explicit values must not exceed the envelope; CPU is
    compared numerically.

    Returns:
        A new Capacity with every field resolved.

    Raises:
        CapacityValidationError: If a value exceeds the envelope or does not parse.
    """
    if not requested.cpu:
        cpu = envelope.cpu
    else:
        envelope_cpu = parse_processors(envelope.cpu, "catalog cpu")
        requested_cpu = parse_processors(requested.cpu, "vm cpu")
        if requested_cpu > envelope_cpu:
            raise CapacityValidationError(
                "vm cpu capacity should not exceed catalog cpu capacity. "
                f"catalog cpu capacity: {envelope_cpu:g}, vm cpu capacity: {requested_cpu:g}"
            )
        cpu = requested.cpu

    if requested.memory == 0:
        memory = envelope.memory
    elif requested.memory > envelope.memory:
        raise CapacityValidationError(
            "vm memory capacity should not exceed catalog memory capacity. "
            f"catalog memory capacity: {envelope.memory}, vm memory capacity: {requested.memory}"
        )
    else:
        memory = requested.memory

    return Capacity(cpu=cpu, memory=memory)


def validate_system_type(system_type: str) -> None:
    if system_type not in AVAILABLE_SYSTEM_TYPES:
        raise ValidationError(f"sys type {system_type} is not supported")


def validate_processor_type(processor_type: str) -> None:
    if processor_type not in AVAILABLE_PROCESSOR_TYPES:
        raise ValidationError(f"processor type {processor_type} is not supported")
