"""Default Workflow Templates - Bundled admissions processes"""
from typing import Dict, List

from ..domain.models import WorkflowDefinition


# Permission names granted to staff roles by the host application
PERMISSION_REQUEST_ADDITIONAL_INFO = "applications.request_additional_info"
PERMISSION_COMPLETE_REVIEW = "applications.complete_review"
PERMISSION_MAKE_ADMISSION_DECISION = "applications.make_admission_decision"
PERMISSION_SCHEDULE_INTERVIEW = "applications.schedule_interview"
PERMISSION_FORWARD_TO_COMMITTEE = "applications.forward_to_committee"
PERMISSION_COMPLETE_COMMITTEE_REVIEW = "applications.complete_committee_review"


def _is_true(field: str) -> List[Dict]:
    return [{"field": field, "operator": "==", "value": True}]


def _decision_stages(first_sequence: int, director_role: str) -> List[Dict]:
    """Decision and outcome stages shared by every template"""
    return [
        {
            "key": "decision",
            "name": "Decision",
            "description": "Final decision on the application",
            "sequence": first_sequence,
            "assigned_role": director_role,
        },
        {
            "key": "accepted",
            "name": "Accepted",
            "description": "Applicant has been accepted",
            "sequence": first_sequence + 1,
            "notification_triggers": ["acceptance_notification"],
        },
        {
            "key": "waitlisted",
            "name": "Waitlisted",
            "description": "Applicant has been placed on the waitlist",
            "sequence": first_sequence + 2,
            "notification_triggers": ["waitlist_notification"],
        },
        {
            "key": "rejected",
            "name": "Rejected",
            "description": "Application has been rejected",
            "sequence": first_sequence + 3,
            "notification_triggers": ["rejection_notification"],
            "is_terminal": True,
        },
        {
            "key": "enrollment",
            "name": "Enrollment",
            "description": "Accepted applicant has confirmed enrollment",
            "sequence": first_sequence + 4,
            "required_actions": ["pay_enrollment_deposit"],
            "notification_triggers": ["enrollment_confirmation"],
            "is_terminal": True,
        },
    ]


def _decision_transitions() -> List[Dict]:
    return [
        {
            "source": "decision",
            "target": "accepted",
            "name": "Accept",
            "description": "Accept the applicant",
            "required_permissions": [PERMISSION_MAKE_ADMISSION_DECISION],
        },
        {
            "source": "decision",
            "target": "waitlisted",
            "name": "Waitlist",
            "description": "Place the applicant on the waitlist",
            "required_permissions": [PERMISSION_MAKE_ADMISSION_DECISION],
        },
        {
            "source": "decision",
            "target": "rejected",
            "name": "Reject",
            "description": "Reject the application",
            "required_permissions": [PERMISSION_MAKE_ADMISSION_DECISION],
        },
        {
            "source": "waitlisted",
            "target": "accepted",
            "name": "Accept from Waitlist",
            "description": "Accept an applicant from the waitlist",
            "required_permissions": [PERMISSION_MAKE_ADMISSION_DECISION],
        },
        {
            "source": "waitlisted",
            "target": "rejected",
            "name": "Reject from Waitlist",
            "description": "Reject an applicant from the waitlist",
            "required_permissions": [PERMISSION_MAKE_ADMISSION_DECISION],
        },
        {
            "source": "accepted",
            "target": "enrollment",
            "name": "Confirm Enrollment",
            "description": "Applicant confirms enrollment by paying deposit",
            "is_automatic": True,
            "conditions": _is_true("enrollment_deposit_paid"),
        },
    ]


def _intake_stages(documents: List[str]) -> List[Dict]:
    """Draft, submission and document verification stages"""
    return [
        {
            "key": "draft",
            "name": "Draft",
            "description": "Application is being prepared by the applicant",
            "sequence": 1,
            "notification_triggers": ["welcome_to_application"],
        },
        {
            "key": "submitted",
            "name": "Submitted",
            "description": "Application has been submitted and is awaiting initial screening",
            "sequence": 2,
            "required_actions": ["submit_application", "pay_application_fee"],
            "notification_triggers": ["application_received"],
        },
        {
            "key": "document_verification",
            "name": "Document Verification",
            "description": "Required documents are being verified",
            "sequence": 3,
            "required_documents": documents,
            "notification_triggers": ["documents_required"],
            "assigned_role": "verification_team",
        },
    ]


def _intake_transitions(review_stage_key: str) -> List[Dict]:
    return [
        {
            "source": "draft",
            "target": "submitted",
            "name": "Submit Application",
            "description": "Applicant submits their application",
            "conditions": _is_true("is_submitted"),
        },
        {
            "source": "submitted",
            "target": "document_verification",
            "name": "Initial Screening Passed",
            "description": "Application passes initial screening",
            "is_automatic": True,
            "conditions": _is_true("application_fee_paid"),
        },
        {
            "source": "document_verification",
            "target": review_stage_key,
            "name": "Documents Verified",
            "description": "All required documents have been verified",
            "is_automatic": True,
            "conditions": _is_true("all_documents_verified"),
        },
    ]


def undergraduate_workflow() -> WorkflowDefinition:
    """Standard workflow for undergraduate applications"""
    stages = _intake_stages(["transcript", "personal_statement", "recommendation_letters"]) + [
        {
            "key": "under_review",
            "name": "Under Review",
            "description": "Application is being reviewed by the admissions committee",
            "sequence": 4,
            "notification_triggers": ["application_under_review"],
            "assigned_role": "admissions_committee",
        },
        {
            "key": "additional_information",
            "name": "Additional Information",
            "description": "Additional information is required from the applicant",
            "sequence": 5,
            "required_actions": ["provide_additional_info"],
            "notification_triggers": ["additional_information_required"],
        },
    ] + _decision_stages(6, "admissions_director")

    transitions = _intake_transitions("under_review") + [
        {
            "source": "under_review",
            "target": "additional_information",
            "name": "Request Information",
            "description": "Request additional information from applicant",
            "required_permissions": [PERMISSION_REQUEST_ADDITIONAL_INFO],
        },
        {
            "source": "additional_information",
            "target": "under_review",
            "name": "Information Provided",
            "description": "Applicant has provided the requested information",
            "is_automatic": True,
            "conditions": _is_true("additional_info_provided"),
        },
        {
            "source": "under_review",
            "target": "decision",
            "name": "Review Complete",
            "description": "Application review is complete",
            "required_permissions": [PERMISSION_COMPLETE_REVIEW],
        },
    ] + _decision_transitions()

    return WorkflowDefinition.model_validate({
        "name": "Undergraduate Admissions",
        "description": "Standard workflow for undergraduate applications",
        "application_type": "undergraduate",
        "is_active": True,
        "stages": stages,
        "transitions": transitions,
    })


def graduate_workflow() -> WorkflowDefinition:
    """Standard workflow for graduate applications"""
    stages = _intake_stages(
        ["transcript", "personal_statement", "recommendation_letters", "resume", "test_scores"]
    ) + [
        {
            "key": "department_review",
            "name": "Department Review",
            "description": "Application is being reviewed by the academic department",
            "sequence": 4,
            "notification_triggers": ["department_review"],
            "assigned_role": "department_reviewer",
        },
        {
            "key": "interview",
            "name": "Interview",
            "description": "Applicant is scheduled for an interview",
            "sequence": 5,
            "required_actions": ["complete_interview"],
            "notification_triggers": ["interview_scheduled"],
            "assigned_role": "interview_committee",
        },
        {
            "key": "committee_review",
            "name": "Graduate Committee Review",
            "description": "Application is being reviewed by the graduate committee",
            "sequence": 6,
            "notification_triggers": ["committee_review"],
            "assigned_role": "graduate_committee",
        },
    ] + _decision_stages(7, "graduate_director")

    transitions = _intake_transitions("department_review") + [
        {
            "source": "department_review",
            "target": "interview",
            "name": "Schedule Interview",
            "description": "Department requests an interview with the applicant",
            "required_permissions": [PERMISSION_SCHEDULE_INTERVIEW],
        },
        {
            "source": "department_review",
            "target": "committee_review",
            "name": "Forward to Committee",
            "description": "Department forwards application to graduate committee",
            "required_permissions": [PERMISSION_FORWARD_TO_COMMITTEE],
        },
        {
            "source": "interview",
            "target": "committee_review",
            "name": "Interview Completed",
            "description": "Applicant has completed the interview",
            "is_automatic": True,
            "conditions": _is_true("interview_completed"),
        },
        {
            "source": "committee_review",
            "target": "decision",
            "name": "Review Complete",
            "description": "Graduate committee review is complete",
            "required_permissions": [PERMISSION_COMPLETE_COMMITTEE_REVIEW],
        },
    ] + _decision_transitions()

    return WorkflowDefinition.model_validate({
        "name": "Graduate Admissions",
        "description": "Standard workflow for graduate applications",
        "application_type": "graduate",
        "is_active": True,
        "stages": stages,
        "transitions": transitions,
    })


def default_workflows() -> List[WorkflowDefinition]:
    """All bundled templates"""
    return [undergraduate_workflow(), graduate_workflow()]
