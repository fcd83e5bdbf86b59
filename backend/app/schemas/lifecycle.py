from pydantic import BaseModel, ConfigDict, Field


class LifecycleSweepResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    soft_deleted: int = Field(default=0, alias="softDeleted")
    hard_deleted: int = Field(default=0, alias="hardDeleted")
    users_updated: int = Field(default=0, alias="usersUpdated")


class LifecycleStats(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    active_posts: int = Field(alias="activePosts")
    expired_posts: int = Field(alias="expiredPosts")
    posts_nearing_expiry: int = Field(alias="postsNearingExpiry")
    posts_eligible_for_purge: int = Field(alias="postsEligibleForPurge")
