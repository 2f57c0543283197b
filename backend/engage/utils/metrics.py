# /engage/utils/metrics.py

from prometheus_client import Counter, Histogram

# Prometheus metrics shared by the API process and the scheduler.

# Messaging
message_counter = Counter('whatsapp_messages_total', 'WhatsApp messages processed', ['status', 'message_type'])
campaign_messages_counter = Counter('campaign_messages_total', 'Campaign and follow-up sends', ['channel', 'status'])

# Journey engine
journey_node_counter = Counter('journey_node_executions_total', 'Journey node executions', ['node_type', 'status'])
journey_enrollment_counter = Counter('journey_enrollments_total', 'Journey enrollments', ['source'])
scheduled_step_counter = Counter('journey_scheduled_steps_total', 'Scheduled journey steps processed', ['status'])

# Infrastructure
response_time_histogram = Histogram('response_time_seconds', 'Response time in seconds', ['endpoint'])
database_operations_counter = Counter('database_operations_total', 'Database operations', ['operation', 'status'])
cache_operations = Counter('cache_operations_total', 'Cache operations', ['operation', 'status'])

# Security
auth_attempts_counter = Counter('auth_attempts_total', 'Authentication attempts', ['status', 'method'])
webhook_signature_counter = Counter('webhook_signature_verifications_total', 'Webhook signature verifications', ['source', 'status'])
