"""
Programme Governance Engine
Identity and role-assignment models.

Models:
    - Organization: top-level customer account owning projects
    - User: platform user (``is_system_admin`` is the platform-wide flag)
    - OrganizationMember: organisation-scope role assignment (org_owner | org_admin | org_member)
    - ProjectMember: project-scope role assignment (supplier_pm | customer_pm | ...)

Role names are stored already migrated to the current vocabulary; legacy
names are rewritten by ``permission_matrix.migrate_role`` before they reach
these tables.
"""

from datetime import datetime, timezone

from app.models import db


def _utcnow():
    return datetime.now(timezone.utc)


class Organization(db.Model):
    __tablename__ = "organizations"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    slug = db.Column(db.String(100), nullable=False, unique=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Organization {self.id}: {self.slug}>"


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), nullable=False, unique=True)
    full_name = db.Column(db.String(200), nullable=False, default="")
    is_system_admin = db.Column(
        db.Boolean, nullable=False, default=False,
        comment="Platform-wide flag; outranks every organisation and project role",
    )
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "email": self.email,
            "full_name": self.full_name,
            "is_system_admin": self.is_system_admin,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<User {self.id}: {self.email}>"


class OrganizationMember(db.Model):
    __tablename__ = "organization_members"
    __table_args__ = (
        db.UniqueConstraint("organization_id", "user_id", name="uq_org_member"),
    )

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(
        db.Integer, db.ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    org_role = db.Column(db.String(30), nullable=False, default="org_member",
                         comment="org_owner | org_admin | org_member")
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "user_id": self.user_id,
            "org_role": self.org_role,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<OrganizationMember org={self.organization_id} user={self.user_id} {self.org_role}>"


class ProjectMember(db.Model):
    __tablename__ = "project_members"
    __table_args__ = (
        db.UniqueConstraint("project_id", "user_id", name="uq_project_member"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    role = db.Column(
        db.String(30), nullable=False, default="viewer",
        comment="supplier_pm | supplier_finance | customer_pm | customer_finance | contributor | viewer",
    )
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "user_id": self.user_id,
            "role": self.role,
        }

    def __repr__(self):
        return f"<ProjectMember project={self.project_id} user={self.user_id} {self.role}>"
