from flask_sqlalchemy import SQLAlchemy
from datetime import datetime, timezone

db = SQLAlchemy()


class NonceRecord(db.Model):
    """An OAuth nonce consumed within the replay window."""
    __tablename__ = 'lti_nonces'

    nonce = db.Column(db.String(255), primary_key=True)
    timestamp = db.Column(db.BigInteger, nullable=False)  # oauth_timestamp, advisory
    used_at = db.Column(db.Float, nullable=False)  # store clock, unix seconds
    expires_at = db.Column(db.Float, nullable=False, index=True)  # max(used_at, timestamp) + window

    def __repr__(self):
        return f'<NonceRecord {self.nonce}>'


class LTILaunch(db.Model):
    """Stores LTI launch data needed for grade passback."""
    __tablename__ = 'lti_launches'

    id = db.Column(db.Integer, primary_key=True)
    consumer_key = db.Column(db.String(255), nullable=False)
    lti_user_id = db.Column(db.String(255), default='')
    roles = db.Column(db.Text, default='')
    context_id = db.Column(db.String(255), default='')  # LMS course ID
    resource_link_id = db.Column(db.String(255), nullable=False)  # LMS activity ID
    outcome_service_url = db.Column(db.Text, default='')  # For grade passback
    result_sourcedid = db.Column(db.Text, default='')  # For grade passback
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    @property
    def can_pass_back(self):
        return bool(self.outcome_service_url and self.result_sourcedid)

    def __repr__(self):
        return f'<LTILaunch user={self.lti_user_id} link={self.resource_link_id}>'


class OutcomeResult(db.Model):
    """A score received on the outcomes endpoint."""
    __tablename__ = 'outcome_results'

    sourcedid = db.Column(db.String(255), primary_key=True)
    score = db.Column(db.Float, nullable=False)  # 0.0 to 1.0
    updated_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    def __repr__(self):
        return f'<OutcomeResult {self.sourcedid}={self.score}>'
