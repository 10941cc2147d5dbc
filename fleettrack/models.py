from flask_sqlalchemy import SQLAlchemy
from sqlalchemy.orm import DeclarativeBase
from datetime import datetime

from fleettrack.intelligence.resolver import LocationSample, LocationSource


class Base(DeclarativeBase):
    pass


db = SQLAlchemy(model_class=Base)


class OfflineLocationUpdate(db.Model):
    __tablename__ = 'offline_location_updates'

    id = db.Column(db.Integer, primary_key=True)
    latitude = db.Column(db.Float, nullable=False)
    longitude = db.Column(db.Float, nullable=False)
    accuracy = db.Column(db.Float, nullable=False)
    source = db.Column(db.String(20), nullable=False)
    confidence = db.Column(db.Float, nullable=False, default=0.0)
    provider = db.Column(db.String(50), nullable=True)
    is_fallback = db.Column(db.Boolean, default=False)
    trip_id = db.Column(db.String(64), nullable=True)
    captured_at = db.Column(db.DateTime, nullable=False, index=True)
    queued_at = db.Column(db.DateTime, default=datetime.utcnow)
    attempts = db.Column(db.Integer, default=0)

    @classmethod
    def from_sample(cls, sample, trip_id=None):
        return cls(
            latitude=sample.latitude,
            longitude=sample.longitude,
            accuracy=sample.accuracy_m,
            source=sample.source.value,
            confidence=sample.confidence,
            provider=sample.provider,
            is_fallback=sample.is_fallback,
            trip_id=trip_id,
            captured_at=sample.captured_at,
        )

    def to_sample(self):
        return LocationSample(
            latitude=self.latitude,
            longitude=self.longitude,
            accuracy_m=self.accuracy,
            source=LocationSource(self.source),
            confidence=self.confidence,
            captured_at=self.captured_at,
            provider=self.provider,
        )

    def to_dict(self):
        return {
            'id': self.id,
            'latitude': self.latitude,
            'longitude': self.longitude,
            'accuracy': self.accuracy,
            'source': self.source,
            'is_fallback': self.is_fallback,
            'trip_id': self.trip_id,
            'captured_at': self.captured_at.isoformat() if self.captured_at else None,
            'queued_at': self.queued_at.isoformat() if self.queued_at else None,
            'attempts': self.attempts,
        }
