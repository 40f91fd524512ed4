"""
Tests for the classifier and recommendation validator

The classifier must:
1. Re-derive status from current allocation vs peak usage
2. Never recommend below peak usage
3. Apply safety multiplier, rounding and floors
4. Refuse recommendations it cannot verify
"""
import math

import pytest

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from analysis.classifier import (
    classify, estimate_peaks, normalize_status, validate_recommendation,
)
from analysis.models import OPTIMIZABLE, WELL_SIZED, INSUFFICIENT_DATA
from cluster.descriptor import ResourceDescriptor
from errors import ValidationFailed
from normalize.quantity import parse_cpu, parse_memory


def _descriptor(cpu='200m', memory='512Mi', replicas=2):
    return ResourceDescriptor('service-a', cpu, memory, replicas, 'default')


def _payload(status='optimizable', cpu_peak=None, memory_peak=None, samples=100, **summary):
    metrics_summary = {'samples_found': samples}
    if cpu_peak is not None:
        metrics_summary['peak_cpu_millicores'] = cpu_peak
    if memory_peak is not None:
        metrics_summary['peak_memory_mi'] = memory_peak
    metrics_summary.update(summary)
    return {'status': status, 'reasoning': 'analysis', 'metrics_summary': metrics_summary}


class TestNormalizeStatus:

    def test_known_statuses(self):
        assert normalize_status('optimizable') == OPTIMIZABLE
        assert normalize_status('Well-Sized') == WELL_SIZED
        assert normalize_status('insufficient_data') == INSUFFICIENT_DATA

    def test_unknown(self):
        assert normalize_status('great') is None
        assert normalize_status(None) is None


class TestEstimatePeaks:

    def test_numeric_fields_win(self, sample_payload):
        peaks = estimate_peaks(sample_payload)
        assert peaks == {'cpu': 80.0, 'memory': 150.0}

    def test_parsed_from_summary_text(self):
        payload = _payload(cpu_data='avg 0.03 cores, peak 0.08 cores',
                           memory_data='heap peaked at max 1.5Gi')
        peaks = estimate_peaks(payload)
        assert peaks['cpu'] == pytest.approx(80.0)
        assert peaks['memory'] == pytest.approx(1536.0)

    def test_summary_without_peak_word_takes_largest(self):
        payload = _payload(cpu_data='samples between 20m and 45m')
        assert estimate_peaks(payload)['cpu'] == pytest.approx(45.0)

    def test_parsed_from_reasoning(self):
        payload = {'status': 'optimizable', 'metrics_summary': {},
                   'reasoning': 'Peak CPU was 120m while maximum memory reached 157286400 bytes.'}
        peaks = estimate_peaks(payload)
        assert peaks['cpu'] == pytest.approx(120.0)
        assert peaks['memory'] == pytest.approx(150.0)

    def test_duration_in_summary_not_read_as_cpu(self):
        payload = _payload(cpu_data='avg 12m over the last 60m')
        assert estimate_peaks(payload)['cpu'] == pytest.approx(12.0)

    def test_duration_in_reasoning_not_read_as_cpu(self):
        payload = {'status': 'optimizable', 'metrics_summary': {},
                   'reasoning': 'The peak over the last 60m was 20m of CPU.'}
        assert estimate_peaks(payload)['cpu'] == pytest.approx(20.0)

    @pytest.mark.parametrize('cpu_data,expected', [
        ('rate(process_cpu_usage[5m]) peaked at 0.04 cores', 40.0),
        ('query now-60m to now: peak 40m', 40.0),
        ('avg 8m per 15m window', 8.0),
    ])
    def test_promql_ranges_and_windows_ignored(self, cpu_data, expected):
        assert estimate_peaks(_payload(cpu_data=cpu_data))['cpu'] == pytest.approx(expected)

    def test_unavailable(self):
        payload = _payload(cpu_data='unavailable', memory_data='unavailable')
        assert estimate_peaks(payload) == {'cpu': None, 'memory': None}


class TestClassify:

    def test_ratio_two_and_a_half_is_optimizable(self):
        result = classify(_payload(cpu_peak=80), _descriptor(cpu='200m'))
        assert result.status == OPTIMIZABLE
        assert result.recommended['cpu'] == '120m'
        assert result.recommended['memory'] == '512Mi'
        assert result.recommended['replicas'] == 2
        assert result.savings['cpu_percent'] == 40.0
        assert result.savings['memory_percent'] == 0.0
        assert result.error is None

    def test_ratio_one_and_a_half_is_well_sized(self):
        result = classify(_payload(status='optimizable', cpu_peak=100), _descriptor(cpu='150m'))
        assert result.status == WELL_SIZED
        assert result.recommended is None

    def test_duration_does_not_hide_overallocation(self):
        result = classify(_payload(cpu_data='avg 12m over the last 60m'), _descriptor(cpu='100m'))
        assert result.status == OPTIMIZABLE
        assert result.metrics_summary['allocation_ratios']['cpu'] == pytest.approx(8.33)
        assert result.recommended['cpu'] == '50m'

    def test_zero_samples_is_insufficient_data(self):
        result = classify(_payload(cpu_peak=1, memory_peak=1, samples=0),
                          _descriptor(cpu='4000m', memory='8Gi'))
        assert result.status == INSUFFICIENT_DATA
        assert result.recommended is None

    def test_both_resources_resized(self, sample_payload, descriptor):
        result = classify(sample_payload, descriptor)
        assert result.status == OPTIMIZABLE
        assert result.recommended == {'cpu': '120m', 'memory': '256Mi', 'replicas': 2}
        assert result.savings == {'cpu_percent': 40.0, 'memory_percent': 50.0}
        assert result.metrics_summary['allocation_ratios'] == {'cpu': 2.5, 'memory': 3.41}

    def test_oracle_recommendation_is_not_trusted(self, sample_payload, descriptor):
        sample_payload['recommended'] = {'cpu': '1m', 'memory': '1Mi', 'replicas': 0}
        result = classify(sample_payload, descriptor)
        assert result.recommended['cpu'] == '120m'
        assert result.recommended['memory'] == '256Mi'

    def test_declared_status_recorded(self, sample_payload, descriptor):
        sample_payload['status'] = 'well-sized'
        result = classify(sample_payload, descriptor)
        assert result.status == OPTIMIZABLE
        assert result.metrics_summary['declared_status'] == 'well-sized'

    def test_floors_applied(self):
        result = classify(_payload(cpu_peak=10, memory_peak=20), _descriptor(cpu='1000m', memory='1Gi'))
        assert result.status == OPTIMIZABLE
        assert result.recommended['cpu'] == '50m'
        assert result.recommended['memory'] == '128Mi'

    def test_nothing_to_reclaim_is_well_sized(self):
        """Floor equals current request, so nothing shrinks"""
        result = classify(_payload(cpu_peak=20), _descriptor(cpu='50m'))
        assert result.status == WELL_SIZED

    def test_under_provisioned_flagged(self):
        result = classify(_payload(cpu_peak=150), _descriptor(cpu='100m'))
        assert result.status == WELL_SIZED
        assert result.metrics_summary['under_provisioned'] == ['cpu']

    def test_under_provisioned_resource_raised_in_recommendation(self):
        result = classify(_payload(cpu_peak=50, memory_peak=300), _descriptor(cpu='500m', memory='256Mi'))
        assert result.status == OPTIMIZABLE
        assert result.recommended['cpu'] == '80m'
        assert result.recommended['memory'] == '512Mi'
        assert result.savings['memory_percent'] == -100.0

    def test_no_peaks_falls_back_to_declared_well_sized(self):
        result = classify(_payload(status='well_sized'), _descriptor())
        assert result.status == WELL_SIZED

    def test_no_peaks_declared_insufficient(self):
        result = classify(_payload(status='insufficient_data'), _descriptor())
        assert result.status == INSUFFICIENT_DATA

    def test_no_peaks_declared_optimizable_fails(self):
        with pytest.raises(ValidationFailed) as exc_info:
            classify(_payload(status='optimizable'), _descriptor(), raw='raw text')
        assert 'cannot be verified' in str(exc_info.value)
        assert exc_info.value.raw_excerpt == 'raw text'

    def test_no_request_set_falls_back(self):
        result = classify(_payload(status='well_sized', cpu_peak=80, memory_peak=100),
                          _descriptor(cpu='0', memory='0'))
        assert result.status == WELL_SIZED

    def test_negative_peak_fails(self):
        with pytest.raises(ValidationFailed):
            classify(_payload(cpu_peak=-5), _descriptor())

    def test_non_finite_peak_fails(self):
        with pytest.raises(ValidationFailed):
            classify(_payload(cpu_peak='inf'), _descriptor())

    @pytest.mark.parametrize('cpu_peak', [1, 7, 33, 47, 66.6, 99, 101, 333, 999])
    @pytest.mark.parametrize('memory_peak', [1, 64, 127, 129, 150, 300, 700, 1000])
    def test_recommendation_never_below_peak(self, cpu_peak, memory_peak):
        result = classify(_payload(cpu_peak=cpu_peak, memory_peak=memory_peak),
                          _descriptor(cpu='4000m', memory='8Gi'))
        assert result.status == OPTIMIZABLE
        assert parse_cpu(result.recommended['cpu']) >= cpu_peak
        assert parse_memory(result.recommended['memory']) >= memory_peak


class TestValidateRecommendation:

    def test_valid(self):
        ok, errors = validate_recommendation({'cpu': 120.0, 'memory': 256.0},
                                             {'cpu': 80.0, 'memory': 150.0},
                                             {'cpu': 200.0, 'memory': 512.0})
        assert ok
        assert errors == []

    def test_below_peak(self):
        ok, errors = validate_recommendation({'cpu': 60.0}, {'cpu': 80.0}, {'cpu': 200.0})
        assert not ok
        assert any('below peak usage' in e for e in errors)

    def test_below_floor_and_off_grid(self):
        ok, errors = validate_recommendation({'memory': 100.0}, {'memory': 50.0}, {'memory': 512.0})
        assert not ok
        assert any('below floor' in e for e in errors)
        assert any('multiple of 128' in e for e in errors)

    def test_unchanged_value_skips_grid_check(self):
        ok, _ = validate_recommendation({'cpu': 155.0}, {'cpu': 100.0}, {'cpu': 155.0})
        assert ok

    def test_not_finite(self):
        ok, errors = validate_recommendation({'cpu': math.inf}, {}, {'cpu': 200.0})
        assert not ok
        assert 'not finite' in errors[0]
