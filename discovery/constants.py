"""
Constants and configuration defaults for the discovery engine.
"""

# Stack Ids (stable per pipeline variant, persisted with the stack data)
BREAKING_NEWS_STACK_ID = "1ce442c8-8a96-433e-91db-c0bee37e5a83"
PERSONALIZED_NEWS_STACK_ID = "311dc7eb-5fc7-4aa4-8232-e119f7e80e76"
TRUSTED_NEWS_STACK_ID = "d0f699d8-60d2-4008-b3a1-df1cffc4b8a5"
SEARCH_STACK_ID = "d8c5a4c5-8f7a-4cde-a1e5-52e4f7f3bd2c"

# Core Engine Limits
CORE_SELECT_TOP_KEY_PHRASES = 3  # Key phrases handed to personalized pipelines
CORE_KEEP_TOP = 20  # Documents kept per stack after an update
CORE_REQUEST_NEW = 3  # Stacks at or below this size are replenished
CORE_MAX_DOCUMENTS = 10  # Default feed batch size
CORE_PAGE_SIZE = 100  # Articles requested per market and pipeline
CORE_SEARCH_PAGE_SIZE = 20
CORE_MAX_AGE_DAYS = 30  # Articles older than this are dropped as stale
CORE_MAX_ACTIVE_DOCUMENTS = 1000  # Served documents remembered for reactions and similar search

# Center of Interest
COI_THRESHOLD = 0.67  # Min cosine similarity to merge into an existing point
COI_HORIZON_DAYS = 30.0  # Points not viewed for this long are fully decayed
COI_MAX_KEY_PHRASES = 3  # Key phrases remembered per positive point
COI_RELEVANCE_WEIGHT = 0.2  # Share of the relevance-weighted similarity in the score
COI_NEGATIVE_PENALTY = 1.0  # Scale of the closest negative point's similarity
COI_TOO_SIMILAR_THRESHOLD = 0.95  # Personalized docs closer than this to a CoI are dropped
COI_DAYS_SCALE = -0.1  # Exponential decay rate per day
COI_WEIGHT_STEEPNESS = 3.0  # Steepness of relevance -> weight mapping
SECONDS_PER_DAY = 86400.0

# Semantic Filter
SEMANTIC_MAX_DAYS = 10.0  # Date distance after which pairs fully decay
SEMANTIC_THRESHOLD = 0.5  # Floor of the date decay factor
SEMANTIC_MAX_DISSIMILARITY = 0.5  # Default dendrogram cutoff
SEMANTIC_DAYS_SCALE = -0.1

# Source Weights
SOURCE_WEIGHT_TRUSTED = 1
SOURCE_WEIGHT_EXCLUDED = -1
SOURCE_WEIGHT_DEFAULT = 0

# Bandit
BETA_PRIOR_ALPHA = 1.0
BETA_PRIOR_BETA = 1.0

# Key Phrase Extraction
KEY_PHRASE_MIN_TOKEN_LENGTH = 3
KEY_PHRASE_TITLE_TOKENS = 3

# Inference
EMBEDDING_MODEL_DIR = "onnx_model"
EMBEDDING_MAX_TOKENS = 52  # Titles are short, keep the token budget small
EMBEDDING_MIN_CLIP = 1e-9
DEFAULT_EMBEDDING_BATCH_SIZE = 8

# Provider HTTP
PROVIDER_BASE_URL = "https://api.newscatcherapi.com/v2"
PROVIDER_HTTP_CONNECT_TIMEOUT = 10.0
PROVIDER_HTTP_READ_TIMEOUT = 30.0
PROVIDER_HTTP_WRITE_TIMEOUT = 10.0
PROVIDER_HTTP_POOL_TIMEOUT = 5.0
PROVIDER_HTTP_USER_AGENT = "discovery-engine/0.1"
PROVIDER_MAX_RETRIES = 3
PROVIDER_RETRY_BACKOFF_BASE = 0.5
PROVIDER_RETRY_BACKOFF_MAX = 8.0
PROVIDER_RATE_LIMIT_REQUESTS = 10  # Requests per rate limit period
PROVIDER_RATE_LIMIT_PERIOD = 1.0  # Seconds
PROVIDER_RETRYABLE_STATUS = frozenset({408, 429, 500, 502, 503, 504})
