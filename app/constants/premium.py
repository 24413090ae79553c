"""
Premium entitlement policy constants.

Pricing: every full block of BLOCK_SIZE_PI grants DAYS_PER_BLOCK days.
2 π = 30 days, 4 π = 60 days, 5 π = 60 days (the partial block is not credited).
"""

# Payment amount (in Pi) that buys one block of premium time
BLOCK_SIZE_PI = 2

# Days granted per full block
DAYS_PER_BLOCK = 30

# Blocks credited for a single payment at most; 3.75M days already runs past
# the last representable expiry
MAX_GRANT_BLOCKS = 125_000

# Display name for users created before the provider tells us their username
DEFAULT_USERNAME = "Pioneer"

# Cap on transaction history returned in a user view (bounds response size only)
TRANSACTION_HISTORY_LIMIT = 100

# Status label stored when the provider does not return one
DEFAULT_PAYMENT_STATUS = "completed"
