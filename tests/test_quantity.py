"""
Tests for quantity parsing and recommendation rounding
"""
import pytest

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from normalize.quantity import (
    parse_cpu, parse_memory, format_cpu, format_memory,
    round_cpu_millicores, round_memory_mi, recommend_cpu, recommend_memory,
)


class TestParseCpu:

    @pytest.mark.parametrize('quantity,expected', [
        ('250m', 250.0),
        ('0.5', 500.0),
        ('2', 2000.0),
        ('1500000n', 1.5),
        ('500u', 0.5),
        (' 100m ', 100.0),
    ])
    def test_valid(self, quantity, expected):
        assert parse_cpu(quantity) == pytest.approx(expected)

    @pytest.mark.parametrize('quantity', [None, '', 'lots', 'm'])
    def test_invalid(self, quantity):
        assert parse_cpu(quantity) is None


class TestParseMemory:

    @pytest.mark.parametrize('quantity,expected', [
        ('512Mi', 512.0),
        ('1Gi', 1024.0),
        ('2048Ki', 2.0),
        ('134217728', 128.0),
        ('1G', 1e9 / 1024 ** 2),
        ('0.5Gi', 512.0),
    ])
    def test_valid(self, quantity, expected):
        assert parse_memory(quantity) == pytest.approx(expected)

    @pytest.mark.parametrize('quantity', [None, '', '12Xi', 'Mi', 'big'])
    def test_invalid(self, quantity):
        assert parse_memory(quantity) is None


class TestFormat:

    def test_format_cpu(self):
        assert format_cpu(120) == '120m'
        assert format_cpu(49.6) == '50m'

    def test_format_memory(self):
        assert format_memory(256) == '256Mi'


class TestRounding:

    def test_cpu_rounds_up_to_ten(self):
        assert round_cpu_millicores(47) == 50
        assert round_cpu_millicores(41) == 50
        assert round_cpu_millicores(40) == 40

    def test_memory_rounds_up_to_128(self):
        assert round_memory_mi(150) == 256
        assert round_memory_mi(128) == 128
        assert round_memory_mi(129) == 256

    def test_float_noise_does_not_bump_a_step(self):
        assert round_cpu_millicores(30.000000000001) == 30

    @pytest.mark.parametrize('value', [1, 9.5, 47, 99.99, 150, 1234.5])
    def test_idempotent(self, value):
        once_cpu = round_cpu_millicores(value)
        once_mem = round_memory_mi(value)
        assert round_cpu_millicores(once_cpu) == once_cpu
        assert round_memory_mi(once_mem) == once_mem

    def test_non_positive(self):
        assert round_cpu_millicores(0) == 0
        assert round_memory_mi(-5) == 0


class TestRecommend:

    def test_cpu_safety_margin(self):
        # 80 * 1.5 = 120
        assert recommend_cpu(80) == 120
        # 47 * 1.5 = 70.5 -> 80
        assert recommend_cpu(47) == 80

    def test_cpu_floor(self):
        assert recommend_cpu(10) == 50
        assert recommend_cpu(0) == 50

    def test_memory_safety_margin(self):
        # 150 * 1.5 = 225 -> 256
        assert recommend_memory(150) == 256
        assert recommend_memory(300) == 512

    def test_memory_floor(self):
        assert recommend_memory(20) == 128
