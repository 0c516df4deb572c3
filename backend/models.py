from sqlalchemy import Column, Integer, String, Float, DateTime, ForeignKey, Boolean, Text, Enum as SQLEnum, UniqueConstraint, Index, Date, JSON
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
import enum
from database import Base


def utcnow() -> datetime:
    """Current UTC time, naive, matching the DateTime columns"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class UserRole(str, enum.Enum):
    """Staff roles, lowest authority first (see auth.ROLE_LEVELS)"""
    T = "T"        # Technician
    R = "R"        # Receptionist
    JS = "JS"      # Junior Supervisor
    POC = "POC"    # POC Supervisor
    HM = "HM"      # Head Manager - all branches


class Permission(str, enum.Enum):
    """Feature-level permissions for RBAC (see auth.PERMISSION_ROLES)"""
    VIEW_JOB_ORDERS = "view_job_orders"
    CREATE_JOB_ORDER = "create_job_order"
    EDIT_JOB_ORDER_NOTES = "edit_job_order_notes"
    REQUEST_APPROVAL = "request_approval"
    RECORD_APPROVAL = "record_approval"
    CANCEL_JOB_ORDER = "cancel_job_order"
    DELETE_JOB_ORDER = "delete_job_order"
    VIEW_PRICING = "view_pricing"
    RESOLVE_PRICING = "resolve_pricing"
    MANAGE_PRICING = "manage_pricing"
    MANAGE_REPAIRS = "manage_repairs"
    VIEW_AUDIT_LOGS = "view_audit_logs"
    VIEW_AUDIT_DETAILS = "view_audit_details"
    MANAGE_USERS = "manage_users"


class RecordStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class CatalogItemType(str, enum.Enum):
    SERVICE = "service"
    PRODUCT = "product"
    PACKAGE = "package"


class PricingType(str, enum.Enum):
    LABOR = "labor"
    PACKAGING = "packaging"


class JobOrderStatus(str, enum.Enum):
    CREATED = "created"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class Branch(Base):
    """Service branch - almost every other entity is scoped to one"""
    __tablename__ = "branches"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    code = Column(String(20), unique=True, nullable=False, index=True)
    address = Column(Text)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<Branch {self.code}>"


class User(Base):
    """Staff profile. Credentials live with the identity provider."""
    __tablename__ = "user_profiles"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(100), unique=True, nullable=False, index=True)
    full_name = Column(String(100), nullable=False)
    phone = Column(String(20), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    roles = relationship("UserRoleAssignment", back_populates="user", cascade="all, delete-orphan")
    branch_assignments = relationship("UserBranchAssignment", back_populates="user", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<User {self.email}>"


class UserRoleAssignment(Base):
    __tablename__ = "user_roles"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("user_profiles.id", ondelete='CASCADE'), nullable=False, index=True)
    role = Column(SQLEnum(UserRole), nullable=False)
    created_at = Column(DateTime, default=utcnow)

    user = relationship("User", back_populates="roles")

    __table_args__ = (
        UniqueConstraint('user_id', 'role', name='uq_user_role'),
    )

    def __repr__(self):
        return f"<UserRoleAssignment User:{self.user_id} Role:{self.role}>"


class UserBranchAssignment(Base):
    __tablename__ = "user_branch_assignments"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("user_profiles.id", ondelete='CASCADE'), nullable=False, index=True)
    branch_id = Column(Integer, ForeignKey("branches.id", ondelete='CASCADE'), nullable=False, index=True)
    is_primary = Column(Boolean, default=False, nullable=False)  # First assigned branch unless chosen explicitly
    created_at = Column(DateTime, default=utcnow)

    user = relationship("User", back_populates="branch_assignments")
    branch = relationship("Branch")

    __table_args__ = (
        UniqueConstraint('user_id', 'branch_id', name='uq_user_branch'),
    )

    def __repr__(self):
        return f"<UserBranchAssignment User:{self.user_id} Branch:{self.branch_id} Primary:{self.is_primary}>"


class Customer(Base):
    __tablename__ = "customers"

    id = Column(Integer, primary_key=True, index=True)
    branch_id = Column(Integer, ForeignKey("branches.id"), nullable=False, index=True)
    full_name = Column(String(100), nullable=False)
    contact_number = Column(String(20))
    email = Column(String(100))
    status = Column(SQLEnum(RecordStatus), default=RecordStatus.ACTIVE, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    vehicles = relationship("Vehicle", back_populates="customer")

    def __repr__(self):
        return f"<Customer {self.full_name} (Branch: {self.branch_id})>"


class Vehicle(Base):
    __tablename__ = "vehicles"

    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, index=True)
    branch_id = Column(Integer, ForeignKey("branches.id"), nullable=False, index=True)
    plate_number = Column(String(20), nullable=False, index=True)
    model = Column(String(100))
    vehicle_type = Column(String(20), default="other")  # sedan, suv, truck, van, motorcycle, ...
    status = Column(SQLEnum(RecordStatus), default=RecordStatus.ACTIVE, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    customer = relationship("Customer", back_populates="vehicles")

    def __repr__(self):
        return f"<Vehicle {self.plate_number}>"


class CatalogItem(Base):
    """Sellable service/product/package. Global items are visible to every branch."""
    __tablename__ = "catalog_items"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    type = Column(SQLEnum(CatalogItemType), nullable=False)
    description = Column(Text)
    base_price = Column(Float, nullable=False, default=0.0)
    status = Column(SQLEnum(RecordStatus), default=RecordStatus.ACTIVE, nullable=False)
    is_global = Column(Boolean, default=False, nullable=False)
    branch_id = Column(Integer, ForeignKey("branches.id"), nullable=True, index=True)  # NULL when global
    created_by = Column(Integer, ForeignKey("user_profiles.id", ondelete='SET NULL'), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index('idx_catalog_items_branch_status', 'branch_id', 'status'),
    )

    def __repr__(self):
        return f"<CatalogItem {self.name} ({self.type})>"


class PricingMatrix(Base):
    """Branch-specific labor/packaging price layered on top of a catalog item's base price"""
    __tablename__ = "pricing_matrices"

    id = Column(Integer, primary_key=True, index=True)
    catalog_item_id = Column(Integer, ForeignKey("catalog_items.id", ondelete='CASCADE'), nullable=False, index=True)
    branch_id = Column(Integer, ForeignKey("branches.id", ondelete='CASCADE'), nullable=False, index=True)
    pricing_type = Column(SQLEnum(PricingType), nullable=False)
    price = Column(Float, nullable=False)
    status = Column(SQLEnum(RecordStatus), default=RecordStatus.ACTIVE, nullable=False)
    description = Column(Text)
    created_by = Column(Integer, ForeignKey("user_profiles.id", ondelete='SET NULL'), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    catalog_item = relationship("CatalogItem")
    branch = relationship("Branch")

    __table_args__ = (
        Index('idx_pricing_lookup', 'catalog_item_id', 'branch_id', 'pricing_type', 'status'),
    )

    def __repr__(self):
        return f"<PricingMatrix Item:{self.catalog_item_id} Branch:{self.branch_id} {self.pricing_type}={self.price}>"


class JobOrder(Base):
    __tablename__ = "job_orders"

    id = Column(Integer, primary_key=True, index=True)
    order_number = Column(String(50), unique=True, nullable=False, index=True)
    branch_id = Column(Integer, ForeignKey("branches.id"), nullable=False, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, index=True)
    vehicle_id = Column(Integer, ForeignKey("vehicles.id"), nullable=False, index=True)
    status = Column(SQLEnum(JobOrderStatus), default=JobOrderStatus.CREATED, nullable=False)
    total_amount = Column(Float, nullable=False, default=0.0)  # Sum of item line totals, repairs excluded
    notes = Column(Text)

    # Customer decision
    approved_at = Column(DateTime, nullable=True)
    approved_by = Column(Integer, ForeignKey("user_profiles.id", ondelete='SET NULL'), nullable=True)
    approval_notes = Column(Text, nullable=True)

    created_by = Column(Integer, ForeignKey("user_profiles.id", ondelete='SET NULL'), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    branch = relationship("Branch")
    customer = relationship("Customer")
    vehicle = relationship("Vehicle")
    items = relationship("JobOrderItem", back_populates="job_order", cascade="all, delete-orphan", order_by="JobOrderItem.id")
    repairs = relationship("ThirdPartyRepair", back_populates="job_order", cascade="all, delete-orphan", order_by="ThirdPartyRepair.id")
    history = relationship("JobOrderHistory", back_populates="job_order", cascade="all, delete-orphan", order_by="JobOrderHistory.id")

    __table_args__ = (
        Index('idx_job_orders_branch_status', 'branch_id', 'status'),
        Index('idx_job_orders_branch_created', 'branch_id', 'created_at'),
    )

    @property
    def third_party_total(self) -> float:
        """Outsourced repair costs; requires `repairs` to be loaded"""
        return sum(repair.cost for repair in self.repairs)

    @property
    def grand_total(self) -> float:
        return self.total_amount + self.third_party_total

    def __repr__(self):
        return f"<JobOrder {self.order_number} ({self.status})>"


class JobOrderItem(Base):
    """Line item with prices snapshotted at creation time"""
    __tablename__ = "job_order_items"

    id = Column(Integer, primary_key=True, index=True)
    job_order_id = Column(Integer, ForeignKey("job_orders.id", ondelete='CASCADE'), nullable=False, index=True)
    catalog_item_id = Column(Integer, ForeignKey("catalog_items.id", ondelete='SET NULL'), nullable=True)
    catalog_item_name = Column(String(100), nullable=False)
    catalog_item_type = Column(SQLEnum(CatalogItemType), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    base_price = Column(Float, nullable=False)
    labor_price = Column(Float, nullable=True)
    packaging_price = Column(Float, nullable=True)
    line_total = Column(Float, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    job_order = relationship("JobOrder", back_populates="items")

    def __repr__(self):
        return f"<JobOrderItem {self.id} (Order: {self.job_order_id}, Total: {self.line_total})>"


class ThirdPartyRepair(Base):
    """Outsourced repair work - payable on top of the order total"""
    __tablename__ = "third_party_repairs"

    id = Column(Integer, primary_key=True, index=True)
    job_order_id = Column(Integer, ForeignKey("job_orders.id", ondelete='CASCADE'), nullable=False, index=True)
    provider_name = Column(String(100), nullable=False)
    description = Column(Text, nullable=False)
    cost = Column(Float, nullable=False)
    repair_date = Column(Date, nullable=False)
    notes = Column(Text)
    created_by = Column(Integer, ForeignKey("user_profiles.id", ondelete='SET NULL'), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    job_order = relationship("JobOrder", back_populates="repairs")

    def __repr__(self):
        return f"<ThirdPartyRepair {self.provider_name} ({self.cost}) Order:{self.job_order_id}>"


class JobOrderHistory(Base):
    """Append-only timeline of a single job order"""
    __tablename__ = "job_order_history"

    id = Column(Integer, primary_key=True, index=True)
    job_order_id = Column(Integer, ForeignKey("job_orders.id", ondelete='CASCADE'), nullable=False, index=True)
    action = Column(String(50), nullable=False)  # CREATE, REQUEST_APPROVAL, APPROVE, REJECT, CANCEL, UPDATE, REPAIR_*
    from_status = Column(String(30), nullable=True)
    to_status = Column(String(30), nullable=True)
    performed_by = Column(Integer, ForeignKey("user_profiles.id", ondelete='SET NULL'), nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    job_order = relationship("JobOrder", back_populates="history")

    def __repr__(self):
        return f"<JobOrderHistory {self.action} Order:{self.job_order_id}>"


class AuditLog(Base):
    """Global administrative audit log"""
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    action = Column(String(50), nullable=False, index=True)  # CREATE, UPDATE, DELETE, UPDATE_ROLES, ...
    entity_type = Column(String(50), nullable=False)  # JOB_ORDER, PRICING_MATRIX, USER, ...
    entity_id = Column(String(50), nullable=True)
    performed_by_user_id = Column(Integer, ForeignKey("user_profiles.id", ondelete='SET NULL'), nullable=True, index=True)
    performed_by_branch_id = Column(Integer, ForeignKey("branches.id", ondelete='SET NULL'), nullable=True, index=True)
    old_values = Column(JSON, nullable=True)
    new_values = Column(JSON, nullable=True)
    status = Column(String(20), default="SUCCESS", nullable=False)  # SUCCESS or FAILED
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    __table_args__ = (
        Index('idx_audit_logs_entity', 'entity_type', 'entity_id'),
    )

    def __repr__(self):
        return f"<AuditLog {self.action} {self.entity_type}:{self.entity_id} by User:{self.performed_by_user_id}>"
