"""
Tests for threshold crossing detection.
"""

from decimal import Decimal

import pytest

from minute_guard.core.thresholds import (
    AlertSeverity,
    THRESHOLD_TEMPLATES,
    detect_crossed_threshold,
    severity_for,
    template_for,
)

LADDER = (70, 85, 95, 100)


class TestDetectCrossedThreshold:
    """Test the one-way threshold ratchet."""

    @pytest.mark.parametrize("percent,last,expected", [
        ("69.9", None, None),
        ("70", None, 70),
        ("86", 70, 85),
        ("86", 85, None),
        ("99", 95, None),
        ("100", 95, 100),
        ("100", 100, None),
        ("50", 85, None),
    ])
    def test_detection(self, percent, last, expected):
        assert detect_crossed_threshold(LADDER, Decimal(percent), last) == expected

    def test_jump_reports_only_highest(self):
        assert detect_crossed_threshold(LADDER, Decimal("96"), None) == 95
        assert detect_crossed_threshold(LADDER, Decimal("100"), 70) == 100

    def test_empty_ladder(self):
        assert detect_crossed_threshold((), Decimal("100"), None) is None

    def test_custom_ladder(self):
        assert detect_crossed_threshold((25, 50), Decimal("60"), 25) == 50


class TestTemplates:
    """Test severity bands and copy."""

    def test_standard_thresholds(self):
        assert severity_for(70) == AlertSeverity.INFO
        assert severity_for(85) == AlertSeverity.WARNING
        assert severity_for(95) == AlertSeverity.WARNING
        assert severity_for(100) == AlertSeverity.CRITICAL

    def test_custom_thresholds_use_bands(self):
        assert severity_for(50) == AlertSeverity.INFO
        assert severity_for(90) == AlertSeverity.WARNING
        template = template_for(90)
        assert template.severity == AlertSeverity.WARNING
        assert "90%" in template.title

    def test_templates_render(self):
        for template in THRESHOLD_TEMPLATES.values():
            rendered = template.message.format(
                percent="95", remaining="10", overage="0.0", charge="0.00"
            )
            assert "{" not in rendered
