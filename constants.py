"""
Kindred - Constants
Centralized tunables for the response pipeline, to avoid magic numbers.
"""

# =============================================================================
# RELATIONSHIP MEMORY
# =============================================================================

MAX_FACTS = 30                   # Facts kept per memory scope (oldest evicted first)
MAX_CHAT_ENTRIES = 50            # Chat transcript entries kept on save
LEVEL_MIN = 0
LEVEL_MAX = 10

DEFAULT_TRUST_LEVEL = 5
DEFAULT_ROMANTIC_LEVEL = 0
DEFAULT_CENSORSHIP_LEVEL = 8
DEFAULT_MOOD = "neutral"
DEFAULT_ENERGY = "normal"

# Substrings marking an extracted fact as relevant to the whole community
GLOBAL_FACT_MARKERS = ("everyone", "the server", "the group")

# =============================================================================
# ENGAGEMENT GATE
# =============================================================================

# (minimum trust, response probability) checked top-down for respond-to-all mode
TRUST_RESPONSE_BUCKETS = (
    (8, 0.8),
    (6, 0.5),
    (4, 0.2),
)
LOW_TRUST_RESPONSE_CHANCE = 0.05

# Random ignore in private contexts
IGNORE_CHANCE_TIRED = 0.3
IGNORE_CHANCE_LOW_TRUST = 0.4
IGNORE_LOW_TRUST_BELOW = 3
IGNORE_CHANCE_DEFAULT = 0.1

# =============================================================================
# AVAILABILITY
# =============================================================================

ACTIVE_HOURS_START = 7
ACTIVE_HOURS_END = 24
MAX_MESSAGES_PER_HOUR = 50
COUNTER_WINDOW_SECONDS = 3600
TIRED_AWAY_MINUTES = 30
LOW_ENERGY_RATIO = 0.8           # Counter above this share of the cap = low energy

SLEEP_MESSAGES = (
    "I'm getting sleepy, gonna head to bed. Talk to you in the morning! 😴",
    "It's my bedtime, catch you tomorrow!",
    "Need to get some rest now. Message you later!",
    "*yawns* Getting really tired, need to sleep. Ttyl!",
)

TIRED_MESSAGES = (
    "I need a quick break! I'll be back in about {minutes} minutes.",
    "Gonna take a little breather for {minutes} mins. Talk soon!",
    "Need to step away for a bit (~{minutes} mins). BRB!",
    "Taking a short break, message you in a bit!",
)

GENERIC_AWAY_MESSAGE = "I'll be back in a while!"

# =============================================================================
# MESSAGE BATCHING
# =============================================================================

MESSAGE_BUFFER_TIMEOUT = 3.0     # Seconds of quiet before a buffer is flushed

# =============================================================================
# TYPING SIMULATION
# =============================================================================

TYPING_CHARS_PER_SECOND = 30
TYPING_CHARS_PER_SECOND_TIRED = 20
TYPING_CHARS_PER_SECOND_ENERGETIC = 40
MIN_TYPING_DELAY = 2.0           # Seconds
MAX_TYPING_DELAY = 5.0           # Seconds
TYPING_JITTER = 0.2              # +/- share of the base delay
TYPING_COMPRESSION = 0.6
TYPING_HARD_CEILING = 2.5        # Seconds, perceived latency never exceeds this
TYPING_WAIT_CAP = 1.0            # Seconds actually slept after the typing indicator

# =============================================================================
# SITUATION NOTES
# =============================================================================

LONG_GAP_MINUTES = 360
SHORT_GAP_MINUTES = 30

# =============================================================================
# MEMORY EXTRACTION
# =============================================================================

DEFAULT_MEMORY_BATCH_SIZE = 10   # Exchanged turns before extraction runs
EXTRACTION_MAX_TOKENS = 600
EXTRACTION_TEMPERATURE = 0.2

# =============================================================================
# DASHBOARD
# =============================================================================

DASHBOARD_DEFAULT_HOST = '127.0.0.1'
DASHBOARD_DEFAULT_PORT = 5000
ACTIVITY_LOG_LIMIT = 200         # Activity lines kept for the dashboard

# =============================================================================
# USER-FACING TEXT
# =============================================================================

APOLOGY_MESSAGE = "Sorry, I'm having trouble responding right now. Please try again in a moment."
