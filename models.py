from sqlalchemy import Column, String, Boolean, DateTime, Text, JSON, Enum
from database import Base
import uuid
import enum
from datetime import datetime, timezone


class CodemodEngine(str, enum.Enum):
    JSCODESHIFT = "jscodeshift"
    TS_MORPH = "ts-morph"
    AST_GREP = "ast-grep"


class Job(Base):
    """One codemod run against one repository ref. Never mutated after insert."""

    __tablename__ = "codemod_jobs"

    job_id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    codemod_engine = Column(
        Enum(CodemodEngine, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
    )
    codemod_name = Column(String(255), nullable=False)
    codemod_source = Column(Text, nullable=False)
    codemod_arguments = Column(JSON, nullable=False, default=dict)
    disable_prettier = Column(Boolean, nullable=False, default=False)
    repo_url = Column(Text, nullable=False)
    branch = Column(String(255), nullable=False)
    user_id = Column(String(255), nullable=False, index=True)
    persistent = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), index=True)
