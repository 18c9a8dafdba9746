from __future__ import annotations

PERM_VIEW_PATIENTS = "viewPatients"
PERM_EDIT_PATIENTS = "editPatients"
PERM_CREATE_PATIENTS = "createPatients"
PERM_DELETE_PATIENTS = "deletePatients"
PERM_CREATE_VISIT = "createVisit"
PERM_VIEW_VISITS = "viewVisits"
PERM_EDIT_VISITS = "editVisits"
PERM_CREATE_LAB_ORDER = "createLabOrder"
PERM_VIEW_LAB_RESULTS = "viewLabResults"
PERM_EDIT_LAB_RESULTS = "editLabResults"
PERM_CREATE_CONSULTATION = "createConsultation"
PERM_VIEW_CONSULTATION = "viewConsultation"
PERM_CREATE_CONSULTATION_FORM = "createConsultationForm"
PERM_VIEW_MEDICATIONS = "viewMedications"
PERM_MANAGE_MEDICATIONS = "manageMedications"
PERM_CREATE_PRESCRIPTION = "createPrescription"
PERM_VIEW_PRESCRIPTIONS = "viewPrescriptions"
PERM_CREATE_REFERRAL = "createReferral"
PERM_VIEW_REFERRALS = "viewReferrals"
PERM_MANAGE_REFERRALS = "manageReferrals"
PERM_MANAGE_USERS = "manageUsers"
PERM_VIEW_USERS = "viewUsers"
PERM_MANAGE_ROLES = "manageRoles"
PERM_MANAGE_ORGANIZATIONS = "manageOrganizations"
PERM_VIEW_ORGANIZATIONS = "viewOrganizations"
PERM_UPLOAD_FILES = "uploadFiles"
PERM_VIEW_FILES = "viewFiles"
PERM_DELETE_FILES = "deleteFiles"
PERM_VIEW_DASHBOARD = "viewDashboard"
PERM_VIEW_REPORTS = "viewReports"
PERM_VIEW_AUDIT_LOGS = "viewAuditLogs"
PERM_VIEW_APPOINTMENTS = "viewAppointments"
PERM_CREATE_APPOINTMENTS = "createAppointments"
PERM_EDIT_APPOINTMENTS = "editAppointments"
PERM_CANCEL_APPOINTMENTS = "cancelAppointments"
PERM_VIEW_BILLING = "viewBilling"
PERM_CREATE_INVOICE = "createInvoice"
PERM_PROCESS_PAYMENT = "processPayment"

# name -> description, in seeding order
DEFAULT_PERMISSIONS: tuple[tuple[str, str], ...] = (
    (PERM_VIEW_PATIENTS, "View patient data"),
    (PERM_EDIT_PATIENTS, "Edit patient data"),
    (PERM_CREATE_PATIENTS, "Create new patient profiles"),
    (PERM_DELETE_PATIENTS, "Delete patient profiles"),
    (PERM_CREATE_VISIT, "Create patient visits"),
    (PERM_VIEW_VISITS, "View visit records"),
    (PERM_EDIT_VISITS, "Edit visit records"),
    (PERM_CREATE_LAB_ORDER, "Create lab orders"),
    (PERM_VIEW_LAB_RESULTS, "View lab results"),
    (PERM_EDIT_LAB_RESULTS, "Update lab results"),
    (PERM_CREATE_CONSULTATION, "Create specialist consultations"),
    (PERM_VIEW_CONSULTATION, "View consultation records"),
    (PERM_CREATE_CONSULTATION_FORM, "Create consultation form templates"),
    (PERM_VIEW_MEDICATIONS, "View prescribed medications"),
    (PERM_MANAGE_MEDICATIONS, "Manage and dispense medications"),
    (PERM_CREATE_PRESCRIPTION, "Create prescriptions"),
    (PERM_VIEW_PRESCRIPTIONS, "View prescription records"),
    (PERM_CREATE_REFERRAL, "Create patient referrals"),
    (PERM_VIEW_REFERRALS, "View referral records"),
    (PERM_MANAGE_REFERRALS, "Accept/reject referrals"),
    (PERM_MANAGE_USERS, "Manage staff and user roles"),
    (PERM_VIEW_USERS, "View staff information"),
    (PERM_MANAGE_ROLES, "Create, update and delete roles and their permissions"),
    (PERM_MANAGE_ORGANIZATIONS, "Manage organization settings"),
    (PERM_VIEW_ORGANIZATIONS, "View organization information"),
    (PERM_UPLOAD_FILES, "Upload files and documents"),
    (PERM_VIEW_FILES, "View and download files"),
    (PERM_DELETE_FILES, "Delete files"),
    (PERM_VIEW_DASHBOARD, "Access the dashboard"),
    (PERM_VIEW_REPORTS, "View analytics and performance reports"),
    (PERM_VIEW_AUDIT_LOGS, "View system audit logs"),
    (PERM_VIEW_APPOINTMENTS, "View appointment schedules"),
    (PERM_CREATE_APPOINTMENTS, "Create and schedule appointments"),
    (PERM_EDIT_APPOINTMENTS, "Modify existing appointments"),
    (PERM_CANCEL_APPOINTMENTS, "Cancel appointments"),
    (PERM_VIEW_BILLING, "View invoices and billing information"),
    (PERM_CREATE_INVOICE, "Create invoices for patients"),
    (PERM_PROCESS_PAYMENT, "Process and record payments"),
)

DEFAULT_PERMISSION_NAMES = [name for name, _ in DEFAULT_PERMISSIONS]

# Legacy single-string role values that still carry meaning for authorization.
# Only the resolver in services/authorization_service.py may interpret them.
LEGACY_ROLE_SUPERADMIN = "superadmin"
LEGACY_ROLE_SUPER_ADMIN = "super_admin"
LEGACY_ROLE_ADMIN = "admin"
LEGACY_ROLE_STAFF = "staff"

TENANT_EXEMPT_LEGACY_ROLES = frozenset({LEGACY_ROLE_SUPERADMIN, LEGACY_ROLE_SUPER_ADMIN})
FULL_CATALOG_LEGACY_ROLES = TENANT_EXEMPT_LEGACY_ROLES | {LEGACY_ROLE_ADMIN}


def grants_full_catalog(legacy_role: str | None) -> bool:
    return legacy_role in FULL_CATALOG_LEGACY_ROLES


def is_tenant_exempt_role(legacy_role: str | None) -> bool:
    return legacy_role in TENANT_EXEMPT_LEGACY_ROLES
