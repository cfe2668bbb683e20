"""
User Model - בעלי חשבונות ושולחי הודעות
"""
from sqlalchemy import Column, Integer, String, DateTime

from app.db.database import Base, utcnow


class User(Base):
    """משתמש מערכת. הודעה משויכת לשולח לפי כתובת, אחרת לבעל החשבון"""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(320), unique=True, index=True, nullable=False)
    name = Column(String(150), nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
