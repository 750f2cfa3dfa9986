from sqlalchemy import Column, String, Text, Integer, Boolean, DateTime, Index
from storyfeed.db.base import Base, generate_uuid

TITLE_MAX_LENGTH = 200
STORY_MAX_LENGTH = 2000
DISPLAY_NAME_MAX_LENGTH = 120
LOCATION_MAX_LENGTH = 200

class Post(Base):
    __tablename__ = "posts"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    author_id = Column(String(128), nullable=False)
    author_display_name = Column(String(DISPLAY_NAME_MAX_LENGTH), nullable=False)
    title = Column(String(TITLE_MAX_LENGTH), nullable=False)
    story = Column(Text, nullable=False)
    location = Column(String(LOCATION_MAX_LENGTH), default="", nullable=False)
    image_url = Column(String(1024))
    image_object = Column(String(255))  # storage object name, never exposed
    created_at = Column(DateTime(timezone=True), nullable=False)

    # Changed only through an atomic UPDATE, see PostRepository.increment_likes
    likes = Column(Integer, default=0, nullable=False)
    flagged = Column(Boolean, default=False, nullable=False)

    __table_args__ = (
        Index('ix_posts_created_at', 'created_at'),
        Index('ix_posts_author_id', 'author_id'),
        Index('ix_posts_flagged', 'flagged'),
    )
