# kato_license/models.py
from sqlalchemy import Column, Integer, Text, Boolean, DateTime, UniqueConstraint
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

Base = declarative_base()


class License(Base):
    __tablename__ = "licenses"
    id = Column(Integer, primary_key=True, index=True)
    license_key = Column(Text, unique=True, nullable=False, index=True)
    order_id = Column(Text, nullable=True)
    variant_id = Column(Text, nullable=True)
    customer_email = Column(Text, nullable=True)
    status = Column(Text, nullable=False, default="active")
    tier = Column(Text, nullable=False, default="freelancer")
    billing_cycle = Column(Text, nullable=False, default="monthly")
    subscription_id = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    expires_at = Column(DateTime(timezone=True), nullable=False)

    def to_dict(self) -> dict:
        return {
            "license_key": self.license_key,
            "order_id": self.order_id,
            "variant_id": self.variant_id,
            "customer_email": self.customer_email,
            "status": self.status,
            "tier": self.tier,
            "billing_cycle": self.billing_cycle,
            "subscription_id": self.subscription_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }


class Activation(Base):
    __tablename__ = "activations"
    __table_args__ = (UniqueConstraint("license_key", "site_url", name="uq_activation_site"),)
    id = Column(Integer, primary_key=True, index=True)
    license_key = Column(Text, nullable=False, index=True)  # FK not declared, licenses are never deleted
    site_url = Column(Text, nullable=False)
    site_domain = Column(Text, nullable=True)
    is_local = Column(Boolean, default=False)
    activated_at = Column(DateTime(timezone=True), server_default=func.now())
    last_checked_at = Column(DateTime(timezone=True), server_default=func.now())

    def to_dict(self) -> dict:
        return {
            "license_key": self.license_key,
            "site_url": self.site_url,
            "site_domain": self.site_domain,
            "is_local": bool(self.is_local),
            "activated_at": self.activated_at.isoformat() if self.activated_at else None,
            "last_checked_at": self.last_checked_at.isoformat() if self.last_checked_at else None,
        }


class SubscriptionEvent(Base):
    __tablename__ = "subscription_events"
    id = Column(Integer, primary_key=True, index=True)
    license_key = Column(Text, nullable=False, default="", index=True)
    event_type = Column(Text, nullable=False)
    event_data = Column(Text, nullable=True)  # raw webhook body
    created_at = Column(DateTime(timezone=True), server_default=func.now())
