#!/usr/bin/env python3
"""
Reconciler API health check.
Exercises the read endpoints, checks validation on the write path without
changing state, and reports node readiness and workload placement health.
"""

from __future__ import annotations

import argparse
import json
import sys
import requests
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
from dataclasses import dataclass


@dataclass
class EndpointTest:
    """Test case for an API endpoint."""
    method: str
    path: str
    name: str
    payload: Optional[Dict] = None
    expected_status: int = 200
    expected_fields: Optional[List[str]] = None
    validate_func: Optional[Callable[[Dict[str, Any]], bool]] = None


class APIHealthChecker:
    def __init__(self, base_url: str, timeout_s: float = 10.0):
        self.base_url = base_url.rstrip('/')
        self.timeout_s = timeout_s
        self.results: List[Dict[str, Any]] = []
        self.issues: List[Dict[str, Any]] = []

    def test_endpoint(self, test: EndpointTest) -> Dict[str, Any]:
        """Test a single endpoint."""
        url = f"{self.base_url}{test.path}"
        result: Dict[str, Any] = {
            "name": test.name,
            "method": test.method,
            "path": test.path,
            "status": "unknown",
            "status_code": None,
            "response_time_ms": None,
            "errors": [],
            "warnings": [],
        }

        try:
            response = requests.request(test.method, url, json=test.payload, timeout=self.timeout_s)
            result["status_code"] = response.status_code
            result["response_time_ms"] = response.elapsed.total_seconds() * 1000

            if response.status_code != test.expected_status:
                result["errors"].append(f"Expected status {test.expected_status}, got {response.status_code}")
                result["status"] = "error"
            else:
                result["status"] = "ok"

            try:
                data = response.json()
            except ValueError:
                result["warnings"].append("Response is not valid JSON")
                return result

            for field in test.expected_fields or []:
                if field not in data:
                    result["warnings"].append(f"Missing expected field: {field}")
            if test.validate_func and not test.validate_func(data):
                result["warnings"].append("Custom validation failed")
        except requests.exceptions.Timeout:
            result["errors"].append("Request timeout")
            result["status"] = "error"
        except requests.exceptions.ConnectionError:
            result["errors"].append("Connection error - API not accessible")
            result["status"] = "error"

        return result

    def run_all_tests(self) -> Dict[str, Any]:
        print("=" * 70)
        print("RECONCILER API HEALTH CHECK")
        print("=" * 70)
        print(f"Testing: {self.base_url}\n")

        for test in self._get_test_cases():
            print(f"Testing {test.method} {test.path}...", end=" ", flush=True)
            result = self.test_endpoint(test)
            self.results.append(result)
            if result["status"] == "ok":
                print(f"✓ ({result['response_time_ms']:.1f}ms)")
            else:
                print(f"✗ {', '.join(result['errors'])}")
                self.issues.append(result)
            for warning in result.get("warnings", []):
                print(f"  ⚠ {warning}")

        total = len(self.results)
        passed = sum(1 for r in self.results if r["status"] == "ok")
        return {
            "summary": {"total_tests": total, "passed": passed, "failed": total - passed},
            "results": self.results,
            "issues": self.issues,
        }

    def _get_test_cases(self) -> List[EndpointTest]:
        return [
            EndpointTest(
                method="GET",
                path="/snapshot",
                name="Snapshot",
                expected_fields=["nodes"],
                validate_func=lambda d: isinstance(d.get("nodes"), list),
            ),
            EndpointTest(method="GET", path="/workloads", name="Workloads", expected_fields=["workloads"]),
            EndpointTest(method="GET", path="/decisions", name="Decisions", expected_fields=["decisions", "bindings"]),
            EndpointTest(method="GET", path="/events?limit=10", name="Events", expected_fields=["events"]),
            EndpointTest(method="GET", path="/health", name="Health", expected_fields=["status", "nodes", "workloads"]),
            # rejected at validation, so nothing is stored
            EndpointTest(
                method="PUT",
                path="/workloads/health-check-sample",
                name="Workload validation - direct TCP without public-IP",
                payload={"exposureType": "direct-tcp", "requiredLabels": []},
                expected_status=400,
            ),
            EndpointTest(
                method="POST",
                path="/observe",
                name="Observe - Invalid Event",
                payload={"type": "invalid", "node": "health-check-sample"},
                expected_status=400,
            ),
        ]


def check_cluster_health(base_url: str, timeout_s: float = 5.0) -> Dict[str, Any]:
    """Summarize node readiness and workload placement from /health."""
    issues: List[Dict[str, str]] = []

    print("\n" + "=" * 70)
    print("CLUSTER HEALTH")
    print("=" * 70)

    try:
        resp = requests.get(f"{base_url}/health", timeout=timeout_s)
        resp.raise_for_status()
        data = resp.json()
    except Exception as e:
        issues.append({"severity": "critical", "issue": f"Cannot read /health: {e}"})
        return {"issues": issues}

    nodes = data.get("nodes", {})
    workloads = data.get("workloads", {})
    print(f"Total Nodes: {nodes.get('total', 0)}")
    print(f"Ready Nodes: {nodes.get('ready', 0)}")
    if nodes.get("total", 0) == 0:
        issues.append({"severity": "high", "issue": "No nodes registered"})
    for name in nodes.get("lost", []):
        issues.append({"severity": "high", "issue": f"Node {name} is lost"})
    for name in nodes.get("suspect", []):
        issues.append({"severity": "medium", "issue": f"Node {name} is inside its grace period"})

    print(f"Workloads: {workloads.get('total', 0)}")
    for name in workloads.get("degraded", []):
        issues.append({"severity": "high", "issue": f"Workload {name} has no eligible node"})
    for name in workloads.get("rebinding", []):
        issues.append({"severity": "medium", "issue": f"Workload {name} is rebinding its volume"})
    for name in workloads.get("partial", []):
        issues.append({"severity": "medium", "issue": f"Workload {name} is only partially placed"})
    for name in workloads.get("stuck_attachments", []):
        issues.append({"severity": "medium", "issue": f"Workload {name} left a stuck volume attachment"})

    if data.get("status") == "healthy":
        print("✓ Cluster healthy")
    return {"status": data.get("status"), "issues": issues}


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("base_url", nargs="?", default="http://127.0.0.1:8080")
    parser.add_argument("--report-dir", default=str(Path(__file__).parent.parent / "reports" / "health"))
    args = parser.parse_args()

    checker = APIHealthChecker(args.base_url)
    report = checker.run_all_tests()
    cluster = check_cluster_health(checker.base_url)

    print("\n" + "=" * 70)
    print("SUMMARY")
    print("=" * 70)
    print(f"Passed: {report['summary']['passed']}/{report['summary']['total_tests']}")
    for issue in cluster["issues"]:
        print(f"  [{issue['severity'].upper()}] {issue['issue']}")

    reports_dir = Path(args.report_dir)
    reports_dir.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    report_path = reports_dir / f"api-health-{timestamp}.json"
    with open(report_path, 'w') as f:
        json.dump({"timestamp": timestamp, "base_url": args.base_url, "api_check": report, "cluster_check": cluster}, f, indent=2)
    print(f"\n✓ Detailed report saved: {report_path}")

    critical = [i for i in cluster["issues"] if i["severity"] in ("critical", "high")]
    if critical or report["summary"]["failed"] > 0:
        sys.exit(1)


if __name__ == "__main__":
    main()
