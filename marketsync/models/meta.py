"""
Meta (ads platform) data models

Daily ad-level insights, the campaign/ad set tree, and age/gender
demographic breakdowns. Every table is keyed by tenant plus the platform's
natural id (and date where the data is daily) so re-syncs upsert.
"""
from sqlalchemy import Column, Integer, String, Float, DateTime, Date, UniqueConstraint
from marketsync.utils.helpers import utcnow

from marketsync.models.base import Base


class MetaAdInsight(Base):
    """
    Daily performance for one ad

    Synced from GET /{ad_account_id}/insights?level=ad&time_increment=1
    """
    __tablename__ = "meta_ad_insights"
    __table_args__ = (
        UniqueConstraint("tenant_id", "ad_id", "date", name="uq_meta_ad_insights_tenant_ad_date"),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String, index=True, nullable=False)
    account_id = Column(String, index=True)
    campaign_id = Column(String, index=True)
    adset_id = Column(String, index=True)
    ad_id = Column(String, nullable=False)
    ad_name = Column(String, nullable=True)
    date = Column(Date, index=True, nullable=False)

    spend = Column(Float, default=0)
    impressions = Column(Integer, default=0)
    clicks = Column(Integer, default=0)
    reach = Column(Integer, default=0)
    purchases = Column(Integer, default=0)
    purchase_value = Column(Float, default=0)

    synced_at = Column(DateTime, default=utcnow)


class MetaCampaign(Base):
    """Campaign node of the account tree"""
    __tablename__ = "meta_campaigns"
    __table_args__ = (
        UniqueConstraint("tenant_id", "campaign_id", name="uq_meta_campaigns_tenant_campaign"),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String, index=True, nullable=False)
    account_id = Column(String, index=True)
    campaign_id = Column(String, nullable=False)
    name = Column(String)
    status = Column(String, index=True)
    objective = Column(String, nullable=True)
    daily_budget = Column(Float, nullable=True)
    lifetime_budget = Column(Float, nullable=True)
    synced_at = Column(DateTime, default=utcnow)


class MetaAdSet(Base):
    """Ad set node of the account tree"""
    __tablename__ = "meta_adsets"
    __table_args__ = (
        UniqueConstraint("tenant_id", "adset_id", name="uq_meta_adsets_tenant_adset"),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String, index=True, nullable=False)
    campaign_id = Column(String, index=True)
    adset_id = Column(String, nullable=False)
    name = Column(String)
    status = Column(String, index=True)
    daily_budget = Column(Float, nullable=True)
    synced_at = Column(DateTime, default=utcnow)


class MetaDemographic(Base):
    """Daily spend broken down by age and gender"""
    __tablename__ = "meta_demographics"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "account_id", "date", "age", "gender",
            name="uq_meta_demographics_tenant_account_date_age_gender"
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String, index=True, nullable=False)
    account_id = Column(String, index=True, nullable=False)
    date = Column(Date, index=True, nullable=False)
    age = Column(String, nullable=False)
    gender = Column(String, nullable=False)

    spend = Column(Float, default=0)
    impressions = Column(Integer, default=0)
    clicks = Column(Integer, default=0)
    synced_at = Column(DateTime, default=utcnow)
