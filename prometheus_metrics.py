"""
Kindred - Prometheus Metrics
Prometheus-compatible counters for the engagement, batching, provider and memory pipeline.
"""

from prometheus_client import Counter, Histogram, Gauge, Info, start_http_server
from typing import Optional
import logger as log


# --- Request Metrics ---

messages_processed = Counter(
    'kindred_messages_processed_total',
    'Total number of combined messages processed',
    ['agent', 'channel_type']  # channel_type: dm, server
)

responses_generated = Counter(
    'kindred_responses_generated_total',
    'Total number of replies generated',
    ['agent', 'success']
)

response_time = Histogram(
    'kindred_response_duration_seconds',
    'End-to-end reply time in seconds',
    ['agent', 'provider'],
    buckets=[0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0]
)

# --- Provider Metrics ---

api_requests = Counter(
    'kindred_api_requests_total',
    'Total number of provider requests made',
    ['provider', 'status']  # status: success or an error kind
)

api_request_duration = Histogram(
    'kindred_api_request_duration_seconds',
    'Provider request duration in seconds',
    ['provider'],
    buckets=[0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0]
)

provider_fallbacks = Counter(
    'kindred_provider_fallbacks_total',
    'Replies served by a fallback provider',
    ['primary', 'provider']
)

# --- Engagement & Availability ---

gate_decisions = Counter(
    'kindred_gate_decisions_total',
    'Engagement gate outcomes',
    ['agent', 'decision']  # decision: respond, skip
)

away_transitions = Counter(
    'kindred_away_transitions_total',
    'Times the agent went away',
    ['agent', 'reason']  # reason: sleeping, tired
)

# --- Batching ---

pending_buffers = Gauge(
    'kindred_pending_buffers',
    'Message buffers waiting to flush',
    ['agent']
)

batch_size = Histogram(
    'kindred_batch_size_messages',
    'Messages combined per flushed buffer',
    ['agent'],
    buckets=[1, 2, 3, 5, 8, 13]
)

# --- Memory ---

memory_extractions = Counter(
    'kindred_memory_extractions_total',
    'Total number of fact extractions',
    ['agent', 'success']
)

memory_extraction_duration = Histogram(
    'kindred_memory_extraction_duration_seconds',
    'Fact extraction time in seconds',
    ['agent'],
    buckets=[1.0, 2.0, 5.0, 10.0, 20.0]
)

memory_file_saves = Counter(
    'kindred_memory_file_saves_total',
    'Total number of memory file saves',
    ['file_type']  # file_type: dm, user, server, chat, mood
)

persistence_failures = Counter(
    'kindred_persistence_failures_total',
    'Memory files that could not be written',
    ['file_type']
)

# --- Errors & Status ---

errors_total = Counter(
    'kindred_errors_total',
    'Total number of errors',
    ['agent', 'error_type']
)

bot_status = Info(
    'kindred_bot_info',
    'Agent information and status',
    ['agent']
)

last_activity = Gauge(
    'kindred_last_activity_timestamp',
    'Unix timestamp of last reply',
    ['agent']
)


# --- Metrics Manager ---

class MetricsManager:
    """Centralized metrics management for Kindred."""

    def __init__(self, metrics_port: int = 8000):
        self.metrics_port = metrics_port
        self._started = False

    def start_metrics_server(self):
        """Start the Prometheus metrics HTTP server."""
        if self._started:
            return

        try:
            start_http_server(self.metrics_port)
            self._started = True
            log.info(f"Prometheus metrics server started on port {self.metrics_port}")
        except OSError as e:
            log.error(f"Failed to start metrics server: {e}")

    # --- Messages ---

    def record_message(self, agent: str, channel_type: str = 'server'):
        messages_processed.labels(agent=agent, channel_type=channel_type).inc()

    def record_response(self, agent: str, success: bool, duration_seconds: float, provider: str = 'none'):
        responses_generated.labels(agent=agent, success=str(success)).inc()
        response_time.labels(agent=agent, provider=provider).observe(duration_seconds)

    # --- Providers ---

    def record_api_request(self, provider: str, status: str, duration_seconds: float):
        api_requests.labels(provider=provider, status=status).inc()
        api_request_duration.labels(provider=provider).observe(duration_seconds)

    def record_fallback(self, primary: str, provider: str):
        provider_fallbacks.labels(primary=primary, provider=provider).inc()

    # --- Engagement ---

    def record_gate_decision(self, agent: str, respond: bool):
        gate_decisions.labels(agent=agent, decision='respond' if respond else 'skip').inc()

    def record_away(self, agent: str, reason: str):
        away_transitions.labels(agent=agent, reason=reason).inc()

    # --- Batching ---

    def update_pending_buffers(self, agent: str, count: int):
        pending_buffers.labels(agent=agent).set(count)

    def record_batch(self, agent: str, size: int):
        batch_size.labels(agent=agent).observe(size)

    # --- Memory ---

    def record_extraction(self, agent: str, success: bool, duration_seconds: float):
        memory_extractions.labels(agent=agent, success=str(success)).inc()
        memory_extraction_duration.labels(agent=agent).observe(duration_seconds)

    def record_memory_file_save(self, file_type: str):
        memory_file_saves.labels(file_type=file_type).inc()

    def record_persistence_failure(self, file_type: str):
        persistence_failures.labels(file_type=file_type).inc()

    # --- Errors & Status ---

    def record_error(self, agent: str, error_type: str):
        errors_total.labels(agent=agent, error_type=error_type).inc()

    def update_bot_status(self, agent: str, character_name: str, online: bool):
        bot_status.labels(agent=agent).info({
            'character': character_name,
            'online': str(online)
        })

    def update_last_activity(self, agent: str, timestamp: Optional[float]):
        if timestamp is not None:
            last_activity.labels(agent=agent).set(timestamp)


# Global metrics manager instance
metrics_manager = MetricsManager()
