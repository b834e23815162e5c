# /autoreply/utils/metrics.py

from prometheus_client import Counter, Histogram

# All Prometheus metrics used by the service, defined in one place.

# Business Logic Metrics
decision_counter = Counter('auto_reply_decisions_total', 'Auto-reply decisions by outcome', ['kind'])
inbound_messages_counter = Counter('inbound_messages_total', 'Inbound messages received', ['status'])
response_time_histogram = Histogram('response_time_seconds', 'Response time in seconds', ['endpoint'])
ai_requests_counter = Counter('ai_requests_total', 'Total AI requests', ['model', 'status'])
database_operations_counter = Counter('database_operations_total', 'Database operations', ['operation', 'status'])
delivery_counter = Counter('whatsapp_deliveries_total', 'Outbound auto-reply deliveries', ['status'])

# Security Metrics
auth_attempts_counter = Counter('auth_attempts_total', 'Authentication attempts', ['status', 'method'])

# Performance Metrics
cache_operations = Counter('cache_operations_total', 'Cache operations', ['operation', 'status'])
