"""
Centralized configuration — env vars, role lists, batch limits.
"""
import os


# ── Logging ──────────────────────────────────────────────────────────────────
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
LOG_FORMAT = os.getenv('LOG_FORMAT', 'text')

# ── Redis ─────────────────────────────────────────────────────────────────────
REDIS_URL = os.getenv('REDIS_URL', 'redis://localhost:6379/0')

# ── PostgreSQL ────────────────────────────────────────────────────────────────
DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///local.db')

# ── Slack notifications ──────────────────────────────────────────────────────
SLACK_WEBHOOK_URL = os.getenv('SLACK_WEBHOOK_URL')

# ── Outbound dispatch gateway ────────────────────────────────────────────────
# Provider-side gateway that actually delivers WhatsApp/SMS/email. When unset,
# messages stay in the dispatch queue as 'ready' for manual pickup.
DISPATCH_GATEWAY_URL = os.getenv('DISPATCH_GATEWAY_URL')
DISPATCH_GATEWAY_TOKEN = os.getenv('DISPATCH_GATEWAY_TOKEN')
DISPATCH_DELAY_SECONDS = float(os.getenv('DISPATCH_DELAY_SECONDS', '1.0'))

# ── Batch sizing ─────────────────────────────────────────────────────────────
DEFAULT_BATCH_LIMIT = int(os.getenv('DEFAULT_BATCH_LIMIT', '100'))
DISTRIBUTION_BATCH_LIMIT = int(os.getenv('DISTRIBUTION_BATCH_LIMIT', '50'))
MAX_BATCH_LIMIT = 2000

# ── Agent roles ──────────────────────────────────────────────────────────────
# Roles that receive new leads from the distribution balancer.
DISTRIBUTION_ROLES = ['sdr', 'presales', 'closer', 'sales']

# Roles notified when an SLA goes critical.
COORDINATOR_ROLES = ['coordinator']

# Roles that take over escalated leads, in order of preference.
ESCALATION_ROLES = ['senior', 'manager', 'coordinator']

# ── Pipeline kinds that escalation watches ───────────────────────────────────
ESCALATION_PIPELINE_KINDS = ['sales', 'closer']

# ── Stage categories that count as "hot" for temperature ─────────────────────
HOT_STAGE_CATEGORIES = ['proposal', 'negotiation']

# ── Enumerations ─────────────────────────────────────────────────────────────
TEMPERATURES = ['cold', 'warm', 'hot']

TRIGGER_TYPES = [
    'stage_entry',
    'time_in_stage',
    'no_contact',
    'temperature_change',
    'scheduled',
]

CHANNELS = ['whatsapp', 'sms', 'email']

EXECUTION_STATUSES = [
    'completed',
    'partial',
    'failed',
]

DISPATCH_STATUSES = [
    'pending',
    'ready',
    'sent',
    'failed',
]
