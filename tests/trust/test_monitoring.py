"""Tests for the trust monitoring instrumentation."""

from __future__ import annotations

from django.test import TestCase, override_settings

from trust import monitoring


class TrustMonitoringTests(TestCase):
    def setUp(self) -> None:
        monitoring.reset_for_tests()
        return super().setUp()

    def test_verification_counters_in_snapshot(self) -> None:
        monitoring.record_verification("primary", "verified")
        monitoring.record_verification("fallback", "rejected")
        monitoring.record_verification("fallback", "rejected")

        snapshot = monitoring.get_metrics_snapshot()

        self.assertEqual(snapshot["verification"]["primary"]["verified"], 1.0)
        self.assertEqual(snapshot["verification"]["fallback"]["rejected"], 2.0)

    def test_fallback_raises_alert(self) -> None:
        monitoring.record_fallback("verify", "recognize timed out")

        snapshot = monitoring.get_metrics_snapshot()

        self.assertEqual(snapshot["fallback"]["verify"], 1.0)
        self.assertEqual(snapshot["alerts"][0]["type"], "biometric_fallback")
        self.assertEqual(snapshot["alerts"][0]["data"]["reason"], "recognize timed out")

    def test_block_raises_alert_but_logged_attempt_does_not(self) -> None:
        monitoring.record_fraud_attempt("photo-spoof", "logged")
        monitoring.record_fraud_attempt("gps-spoof", "blocked")

        alerts = monitoring.get_metrics_snapshot()["alerts"]

        self.assertEqual([alert["type"] for alert in alerts], ["subject_blocked"])

    @override_settings(TRUST_ALERT_HISTORY=2)
    def test_alert_history_is_bounded(self) -> None:
        for operation in ("register", "verify", "identify"):
            monitoring.record_fallback(operation)

        alerts = monitoring.get_metrics_snapshot()["alerts"]

        self.assertEqual([alert["data"]["operation"] for alert in alerts], ["verify", "identify"])

    def test_active_sessions_and_export(self) -> None:
        monitoring.set_active_sessions(3)
        monitoring.record_liveness_outcome("timeout")
        with monitoring.observe_backend_call("recognize"):
            pass

        payload = monitoring.export_metrics()

        self.assertEqual(monitoring.get_metrics_snapshot()["active_sessions"], 3.0)
        self.assertIn(b"trust_liveness_outcomes_total", payload)
        self.assertIn(b"trust_backend_latency_seconds_count", payload)
        self.assertTrue(monitoring.prometheus_content_type().startswith("text/plain"))
