import random
import string

import pytest

from lakestack.errors import ConfigurationError
from lakestack.PARSERS.registry_parser import RegistryParser, parse_duration
from lakestack.UTILS.string_interpolation import EnvironmentInterpolator


def random_string(length):
    return ''.join(random.choice(string.printable) for _ in range(length))


def test_fuzz_registry_parser():
    """Random junk either parses or fails with a ConfigurationError, never anything else."""
    parser = RegistryParser(context={})
    for _ in range(200):
        content = random_string(random.randint(0, 1000))
        try:
            parser.parse_from_string(content)
        except ConfigurationError:
            pass


def test_fuzz_interpolation():
    for _ in range(200):
        content = random_string(random.randint(0, 200))
        try:
            EnvironmentInterpolator.interpolate(content, {"A": "1"})
        except ConfigurationError:
            pass


def test_fuzz_durations():
    for _ in range(200):
        content = random_string(random.randint(0, 20))
        try:
            parse_duration(content)
        except ConfigurationError:
            pass


@pytest.mark.parametrize("content", [
    "",
    "   \n\t  ",
    "services:",
    "services: []",
    "services:\n  a: 5",
    "services:\n  a:\n    depends_on: 3",
    "services:\n  a:\n    command: {x: 1}",
    "services:\n  a:\n    healthcheck: {protocol: gopher}",
    "services:\n  a:\n    provision: [{bucket: x, volume: y}]",
    "services:\n  a:\n    restart: always:many",
    "x-lakestack: [1, 2]",
    "- just\n- a list",
])
def test_edge_cases_registry(content):
    parser = RegistryParser(context={})
    try:
        parser.parse_from_string(content)
    except ConfigurationError:
        pass
