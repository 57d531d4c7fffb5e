"""In-process metrics collector for gateway connections and sub-sessions."""

from collections import defaultdict
from datetime import datetime
from typing import Any, Dict


class MetricsCollector:
    """Collect runtime counters for the realtime gateway."""

    def __init__(self):
        self.stats = {
            'connections_accepted': 0,
            'connections_rejected': 0,
            'messages_total': 0,
            'messages_dropped': 0,
            'unmatched_responses': 0,
            'correlation_timeouts': 0,
            'tool_calls_total': 0,
            'tool_call_errors': 0,
            'start_time': datetime.now(),
        }
        self.connections_by_kind: Dict[str, int] = defaultdict(int)
        self.init_fallbacks: Dict[str, int] = defaultdict(int)
        self.rejections_by_reason: Dict[str, int] = defaultdict(int)

    def record_connection(self, kind: str):
        """Record an accepted connection of ``kind`` (client or edge)."""
        self.stats['connections_accepted'] += 1
        self.connections_by_kind[kind] += 1

    def record_rejection(self, reason: str):
        """Record a connection refused during the handshake."""
        self.stats['connections_rejected'] += 1
        self.rejections_by_reason[reason] += 1

    def record_message(self):
        self.stats['messages_total'] += 1

    def record_dropped_message(self):
        """Record an inbound message that failed to parse or validate."""
        self.stats['messages_dropped'] += 1

    def record_unmatched_response(self):
        self.stats['unmatched_responses'] += 1

    def record_correlation_timeout(self):
        self.stats['correlation_timeouts'] += 1

    def record_init_fallback(self, kind: str):
        """Record a sub-session that went ready without an init acknowledgment."""
        self.init_fallbacks[kind] += 1

    def record_tool_call(self, ok: bool):
        self.stats['tool_calls_total'] += 1
        if not ok:
            self.stats['tool_call_errors'] += 1

    def get_stats(self) -> Dict[str, Any]:
        """Return aggregated metrics snapshot."""
        uptime = (datetime.now() - self.stats['start_time']).total_seconds()
        return {
            'connections': {
                'accepted': self.stats['connections_accepted'],
                'rejected': self.stats['connections_rejected'],
                'accepted_by_kind': dict(self.connections_by_kind),
                'rejected_by_reason': dict(self.rejections_by_reason),
            },
            'messages': {
                'total': self.stats['messages_total'],
                'dropped': self.stats['messages_dropped'],
            },
            'correlation': {
                'unmatched_responses': self.stats['unmatched_responses'],
                'timeouts': self.stats['correlation_timeouts'],
            },
            'tools': {
                'calls': self.stats['tool_calls_total'],
                'errors': self.stats['tool_call_errors'],
            },
            'init_fallbacks': dict(self.init_fallbacks),
            'uptime_seconds': round(uptime),
        }

    def to_prometheus_text(self) -> str:
        lines = [
            "# HELP ejunz_gateway_connections_total Accepted gateway connections",
            "# TYPE ejunz_gateway_connections_total counter",
            f"ejunz_gateway_connections_total {self.stats['connections_accepted']}",
            "# HELP ejunz_gateway_connections_rejected_total Connections refused during handshake",
            "# TYPE ejunz_gateway_connections_rejected_total counter",
            f"ejunz_gateway_connections_rejected_total {self.stats['connections_rejected']}",
            "# HELP ejunz_gateway_messages_dropped_total Inbound messages dropped as malformed",
            "# TYPE ejunz_gateway_messages_dropped_total counter",
            f"ejunz_gateway_messages_dropped_total {self.stats['messages_dropped']}",
            "# HELP ejunz_gateway_unmatched_responses_total Responses with no pending request",
            "# TYPE ejunz_gateway_unmatched_responses_total counter",
            f"ejunz_gateway_unmatched_responses_total {self.stats['unmatched_responses']}",
            "# HELP ejunz_gateway_correlation_timeouts_total Requests that timed out",
            "# TYPE ejunz_gateway_correlation_timeouts_total counter",
            f"ejunz_gateway_correlation_timeouts_total {self.stats['correlation_timeouts']}",
            "# HELP ejunz_gateway_tool_calls_total Tool calls routed through the bridge",
            "# TYPE ejunz_gateway_tool_calls_total counter",
            f"ejunz_gateway_tool_calls_total {self.stats['tool_calls_total']}",
            f"ejunz_gateway_tool_call_errors_total {self.stats['tool_call_errors']}",
        ]
        for kind, count in self.connections_by_kind.items():
            escaped = kind.replace('"', '\\"')
            lines.append(f'ejunz_gateway_connections_by_kind_total{{kind="{escaped}"}} {count}')
        for kind, count in self.init_fallbacks.items():
            escaped = kind.replace('"', '\\"')
            lines.append(f'ejunz_gateway_init_fallbacks_total{{kind="{escaped}"}} {count}')
        return "\n".join(lines) + "\n"

    def reset(self):
        """Reset all counters."""
        self.__init__()


_metrics_collector = MetricsCollector()


def get_metrics_collector() -> MetricsCollector:
    """Return shared metrics collector singleton."""
    return _metrics_collector
