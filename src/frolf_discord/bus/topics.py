from __future__ import annotations

# Requests published by the bot.
USER_SIGNUP_REQUEST = "user.signup.request"
USER_UDISC_IDENTITY_UPDATE_REQUEST = "user.udisc.identity.update.request"
ROLE_UPDATE_REQUEST = "role.update.request"
SCORE_UPDATE_REQUEST = "score.update.request"
USER_PROFILE_UPDATED = "user.profile.updated"
SCORECARD_URL_REQUESTED = "scorecard.url.requested"
SCORECARD_UPLOADED = "scorecard.uploaded"
LEADERBOARD_TAG_CLAIM_REQUEST = "leaderboard.tag.claim.request"
ROUND_CREATION_REQUESTED = "round.creation.requested"
GUILD_SETUP_REQUESTED = "guild.setup.requested"
GUILD_CONFIG_RETRIEVAL_REQUESTED = "guild.config.retrieval.requested"
GUILD_CONFIG_DELETION_REQUESTED = "guild.config.deletion.requested"

# Consumed by the bot: replies, plus requests the backend starts.
USER_PROFILE_SYNC_REQUEST = "user.profile.sync.request"
USER_CREATED = "user.created"
USER_CREATION_FAILED = "user.creation.failed"
USER_ROLE_UPDATED = "user.role.updated"
USER_ROLE_UPDATE_FAILED = "user.role.update.failed"
USER_UDISC_IDENTITY_UPDATED = "user.udisc.identity.updated"
USER_UDISC_IDENTITY_UPDATE_FAILED = "user.udisc.identity.update.failed"
SCORE_UPDATED = "score.updated"
SCORE_UPDATE_FAILED = "score.update.failed"
ROUND_SCORES_PROCESSED_FAILED = "round.scores.processed.failed"
SCORECARD_IMPORT_FAILED = "scorecard.import.failed"
LEADERBOARD_TAG_CLAIMED = "leaderboard.tag.claimed"
LEADERBOARD_TAG_CLAIM_FAILED = "leaderboard.tag.claim.failed"
ROUND_CREATED = "round.created"
ROUND_CREATION_FAILED = "round.creation.failed"
GUILD_SETUP_COMPLETED = "guild.setup.completed"
GUILD_SETUP_FAILED = "guild.setup.failed"
GUILD_CONFIG_RETRIEVED = "guild.config.retrieved"
GUILD_CONFIG_RETRIEVAL_FAILED = "guild.config.retrieval.failed"
GUILD_CONFIG_UPDATED = "guild.config.updated"
GUILD_CONFIG_DELETED = "guild.config.deleted"
GUILD_CONFIG_DELETION_FAILED = "guild.config.deletion.failed"

GUILD_CONFIG_TOPICS = (
    GUILD_CONFIG_RETRIEVED,
    GUILD_CONFIG_RETRIEVAL_FAILED,
    GUILD_CONFIG_UPDATED,
    GUILD_CONFIG_DELETED,
)

# Delivered to renderers even without a correlation ID.
UNCORRELATED_TOPICS = GUILD_CONFIG_TOPICS + (USER_PROFILE_SYNC_REQUEST,)
