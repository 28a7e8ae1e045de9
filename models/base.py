"""
Base Model Classes and Mixin Utilities for Flask-SQLAlchemy

This module provides the foundational model architecture: the shared
Flask-SQLAlchemy instance, an audit mixin for creation/update attribution and
a BaseModel with JSON-friendly serialization.

Key Components:
- db: Flask-SQLAlchemy instance initialized by the application factory
- AuditMixin: Automatic timestamp and user attribution tracking
- BaseModel: Common model functionality and serialization methods
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from flask import g, has_request_context
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import Column, DateTime, String
from sqlalchemy.orm import declared_attr
from sqlalchemy.inspection import inspect

from utils.datetime import format_for_audit, now_utc

# Global SQLAlchemy instance (initialized by the Flask app factory)
db = SQLAlchemy()


def get_current_user_id() -> Optional[str]:
    """
    Extract the authenticated user id from the Flask request context.

    Returns:
        Optional[str]: Current user ID if available, None otherwise
    """
    if has_request_context():
        return g.get('user_id')
    return None


class AuditMixin:
    """
    Mixin providing automated audit fields for database models.

    - created_at: Timestamp of record creation
    - updated_at: Timestamp of last modification (auto-updated)
    - created_by: User who created the record
    - updated_by: User who last modified the record
    """

    @declared_attr
    def created_at(cls):
        """Timestamp when the record was created (auto-populated)."""
        return Column(DateTime(timezone=True), default=now_utc, nullable=False)

    @declared_attr
    def updated_at(cls):
        """Timestamp when the record was last updated (auto-populated on changes)."""
        return Column(DateTime(timezone=True), default=now_utc, onupdate=now_utc, nullable=False)

    @declared_attr
    def created_by(cls):
        return Column(String(255), nullable=True)

    @declared_attr
    def updated_by(cls):
        return Column(String(255), nullable=True)

    def get_audit_info(self) -> Dict[str, Any]:
        """
        Retrieve audit information for this record.

        Returns:
            Dict[str, Any]: Dictionary containing audit trail information
        """
        return {
            'created_at': format_for_audit(self.created_at),
            'updated_at': format_for_audit(self.updated_at),
            'created_by': self.created_by,
            'updated_by': self.updated_by,
        }


class BaseModel(db.Model):
    """
    Base model class providing common functionality for Flask-SQLAlchemy models.

    Usage:
        class RoleAssignmentRecord(BaseModel, AuditMixin):
            __tablename__ = 'user_role_assignments'
            id = Column(String(36), primary_key=True)
    """

    __abstract__ = True

    def to_dict(self, exclude_fields: Optional[List[str]] = None,
                include_audit: bool = True) -> Dict[str, Any]:
        """
        Convert model instance to dictionary for JSON serialization.

        Args:
            exclude_fields: Attribute names to exclude from output
            include_audit: Whether to include audit fields

        Returns:
            Dict[str, Any]: Dictionary representation of the model
        """
        exclude_fields = set(exclude_fields or [])
        if not include_audit:
            exclude_fields.update({'created_at', 'updated_at', 'created_by', 'updated_by'})

        result: Dict[str, Any] = {}
        for attr in inspect(self.__class__).column_attrs:
            if attr.key in exclude_fields:
                continue
            value = getattr(self, attr.key)
            if isinstance(value, datetime):
                value = format_for_audit(value)
            elif hasattr(value, 'value'):
                value = value.value
            result[attr.key] = value
        return result

    def __repr__(self) -> str:
        identity = inspect(self).identity
        return f"<{self.__class__.__name__} {identity[0] if identity else 'transient'}>"

