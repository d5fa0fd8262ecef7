"""
Grafana OTLP Metrics Exporter
==============================

Pushes SLA gauges to Grafana Cloud via OTLP/HTTP.

Metrics exported (one data point per SLA, attribute ``sla_id``):
- sla_compliance_percentage: current compliance %
- sla_current_value: current aggregated metric value
- sla_active_breaches: number of open breaches
- sla_breaches_total: breaches recorded since start
"""

import base64
import time
from typing import Any, Dict, List, Optional

import httpx

from config import settings
from shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


class GrafanaOTLPExporter:
    """
    Export SLA metrics to Grafana Cloud via OTLP HTTP endpoint.

    Uses OpenTelemetry Protocol (OTLP) JSON format for metrics.
    """

    def __init__(
        self,
        host: Optional[str] = None,
        api_key: Optional[str] = None,
        instance_id: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize Grafana OTLP exporter.

        Args:
            host: Grafana OTLP gateway URL (e.g., https://otlp-gateway-prod-ap-south-1.grafana.net)
            api_key: Grafana API key
            instance_id: Instance ID for authentication
            http_client: Optional shared client (tests inject a mock transport)
        """
        self._host = host or settings.grafana_host
        self._api_key = api_key or settings.grafana_api_key
        self._instance_id = instance_id or settings.grafana_instance_id
        self._http_client = http_client
        self._enabled = bool(self._host and self._api_key and self._instance_id)

        if self._enabled:
            auth_pair = f"{self._instance_id}:{self._api_key}"
            self._auth_encoded = base64.b64encode(auth_pair.encode()).decode()
            # Don't double-append the path if host already includes it
            if "/otlp/v1/metrics" not in self._host:
                self._url = f"{self._host}/otlp/v1/metrics"
            else:
                self._url = self._host
            logger.info(
                "Grafana OTLP exporter initialized",
                extra={"host": self._host, "instance_id": self._instance_id}
            )
        else:
            logger.info(
                "Grafana OTLP exporter not configured - metrics will not be exported",
                extra={
                    "host_configured": bool(self._host),
                    "api_key_configured": bool(self._api_key),
                    "instance_id_configured": bool(self._instance_id)
                }
            )

    def is_enabled(self) -> bool:
        """Check if exporter is properly configured."""
        return self._enabled

    @staticmethod
    def _gauge(name: str, unit: str, description: str, points: List[Dict[str, Any]]) -> Dict[str, Any]:
        return {"name": name, "unit": unit, "description": description, "gauge": {"dataPoints": points}}

    def build_payload(self, snapshots: List[Dict[str, Any]]) -> Dict[str, Any]:
        """
        Build the OTLP payload.

        Each snapshot holds ``sla_id``, ``service_id``, ``compliance_percentage``,
        ``current_value``, ``active_breaches`` and ``total_breaches``; missing
        values are skipped.
        """
        timestamp_ns = int(time.time() * 1_000_000_000)
        series: Dict[str, List[Dict[str, Any]]] = {
            "compliance_percentage": [],
            "current_value": [],
            "active_breaches": [],
            "total_breaches": [],
        }

        for snapshot in snapshots:
            attributes = [
                {"key": "sla_id", "value": {"stringValue": snapshot["sla_id"]}},
                {"key": "service_id", "value": {"stringValue": snapshot.get("service_id", "")}},
                {"key": "service", "value": {"stringValue": settings.app_name}},
            ]
            for key in ("compliance_percentage", "current_value"):
                if snapshot.get(key) is not None:
                    series[key].append({
                        "asDouble": float(snapshot[key]),
                        "timeUnixNano": timestamp_ns,
                        "attributes": attributes,
                    })
            for key in ("active_breaches", "total_breaches"):
                series[key].append({
                    "asInt": int(snapshot.get(key, 0)),
                    "timeUnixNano": timestamp_ns,
                    "attributes": attributes,
                })

        metrics = [
            self._gauge("sla_compliance_percentage", "%", "Current SLA compliance percentage",
                        series["compliance_percentage"]),
            self._gauge("sla_current_value", "1", "Current aggregated SLA metric value",
                        series["current_value"]),
            self._gauge("sla_active_breaches", "1", "Open SLA breaches", series["active_breaches"]),
            self._gauge("sla_breaches_total", "1", "SLA breaches recorded", series["total_breaches"]),
        ]

        return {
            "resourceMetrics": [
                {
                    "resource": {
                        "attributes": [
                            {"key": "service.name", "value": {"stringValue": settings.app_name}},
                            {"key": "service.version", "value": {"stringValue": settings.app_version}},
                            {"key": "deployment.environment", "value": {"stringValue": settings.environment}},
                        ]
                    },
                    "scopeMetrics": [{"metrics": [m for m in metrics if m["gauge"]["dataPoints"]]}]
                }
            ]
        }

    async def export_sla_metrics(self, snapshots: List[Dict[str, Any]]) -> bool:
        """
        Export SLA gauges to Grafana.

        Returns:
            True if export succeeded, False otherwise (never raises)
        """
        if not self._enabled:
            logger.debug("Grafana exporter not enabled - skipping metrics export")
            return False
        if not snapshots:
            return False

        payload = self.build_payload(snapshots)
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Basic {self._auth_encoded}",
            "X-Grafana-Org-Id": str(self._instance_id)
        }

        try:
            if self._http_client is not None:
                response = await self._http_client.post(self._url, headers=headers, json=payload)
            else:
                async with httpx.AsyncClient(timeout=30.0) as client:
                    response = await client.post(self._url, headers=headers, json=payload)
        except httpx.HTTPError as e:
            logger.error("Error exporting metrics to Grafana", extra={"error": str(e)})
            return False

        if response.status_code in (200, 202):
            logger.info(
                "SLA metrics exported to Grafana",
                extra={"sla_count": len(snapshots), "status_code": response.status_code}
            )
            return True

        logger.warning(
            "Failed to export metrics to Grafana",
            extra={
                "status_code": response.status_code,
                "response": response.text[:500],
                "url": self._url
            }
        )
        return False


# Global exporter instance
_grafana_exporter: Optional[GrafanaOTLPExporter] = None


def get_grafana_exporter() -> GrafanaOTLPExporter:
    """Get or create global Grafana exporter instance."""
    global _grafana_exporter
    if _grafana_exporter is None:
        _grafana_exporter = GrafanaOTLPExporter()
    return _grafana_exporter


def init_grafana_exporter(
    host: str,
    api_key: str,
    instance_id: str
) -> GrafanaOTLPExporter:
    """Initialize Grafana exporter with credentials."""
    global _grafana_exporter
    _grafana_exporter = GrafanaOTLPExporter(
        host=host,
        api_key=api_key,
        instance_id=instance_id
    )
    return _grafana_exporter
