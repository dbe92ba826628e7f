from __future__ import annotations

import copy
from typing import Any


def _task(title: str, *, priority: str | None = None, due_in_hours: int | None = None, recurring: bool = False) -> dict[str, Any]:
    config: dict[str, Any] = {"title": title, "assignToOwner": True}
    if priority is not None:
        config["priority"] = priority
    if due_in_hours is not None:
        config["dueInHours"] = due_in_hours
    if recurring:
        config["recurring"] = True
    return {"type": "create_task", "config": config}


def _notify(message: str) -> dict[str, Any]:
    return {"type": "send_notification", "config": {"message": message}}


def _on_enter(*actions: dict[str, Any]) -> dict[str, Any]:
    return {"trigger": "on_enter", "actions": list(actions)}


def _on_duration(minutes: int, *actions: dict[str, Any], recurring: bool = False) -> dict[str, Any]:
    return {"trigger": "on_duration", "duration": minutes, "recurring": recurring, "actions": list(actions)}


RECRUITMENT_TEMPLATE: dict[str, Any] = {
    "id": "recruitment",
    "name": "Recruitment & Staffing",
    "description": "Dual-sided candidate and client management",
    "pipelineStages": [
        {
            "name": "Candidate Sourced",
            "order": 1,
            "color": "#94a3b8",
            "probability": 5,
            "description": "Resume/profile added to system",
            "intent": "Initial candidate discovery",
            "requiredFields": ["name", "contact", "resume"],
            "subStatuses": ["LinkedIn", "Portal", "Referral", "Database"],
            "failureSignals": ["Incomplete profile", "No contact info"],
            "automations": [
                _on_enter(
                    {"type": "assign_user", "config": {"role": "recruiter", "strategy": "by_specialization"}},
                    _task("Screen candidate resume", priority="medium", due_in_hours=24),
                ),
            ],
        },
        {
            "name": "Screening Completed",
            "order": 2,
            "color": "#60a5fa",
            "probability": 15,
            "description": "Initial screening done",
            "intent": "Determine fit for open positions",
            "requiredFields": ["screeningNotes", "fitStatus"],
            "subStatuses": ["Strong Fit", "Moderate Fit", "Poor Fit", "Future Consideration"],
            "failureSignals": ["Salary mismatch", "Skills gap", "Attitude issues"],
            "automations": [_on_enter(_task("Match candidate to open requirements", due_in_hours=12))],
        },
        {
            "name": "Shortlisted for Client",
            "order": 3,
            "color": "#8b5cf6",
            "probability": 30,
            "description": "Matched to specific job requirement",
            "intent": "Prepare for client presentation",
            "requiredFields": ["jobRequirement", "matchScore"],
            "subStatuses": ["Preparing Profile", "Ready to Share"],
            "failureSignals": ["Candidate unavailable", "Better candidates found"],
            "automations": [
                _on_enter(_task("Share candidate profile with client", priority="high", due_in_hours=24)),
            ],
        },
        {
            "name": "Interview Scheduled",
            "order": 4,
            "color": "#f59e0b",
            "probability": 45,
            "description": "Client interview arranged",
            "intent": "Facilitate interview process",
            "requiredFields": ["interviewDate", "interviewMode", "interviewRound"],
            "subStatuses": ["Round 1", "Round 2", "Final Round"],
            "failureSignals": ["Candidate dropout", "Interview postponed"],
            "automations": [
                _on_enter(
                    _task("Send interview details and prep to candidate", priority="high", due_in_hours=12),
                    _task("Follow up post-interview for feedback", due_in_hours=48),
                    _notify("Interview scheduled - prepare candidate"),
                ),
            ],
        },
        {
            "name": "Interview Cleared",
            "order": 5,
            "color": "#10b981",
            "probability": 60,
            "description": "Positive feedback from client",
            "intent": "Move towards offer",
            "requiredFields": ["clientFeedback"],
            "subStatuses": ["Strong Positive", "Conditional", "Waiting Decision"],
            "failureSignals": ["Salary negotiation stuck", "Candidate backing out"],
            "automations": [_on_enter(_task("Negotiate salary and terms", priority="high", due_in_hours=24))],
        },
        {
            "name": "Offer Rolled Out",
            "order": 6,
            "color": "#3b82f6",
            "probability": 75,
            "description": "Formal offer letter sent",
            "intent": "Close the placement",
            "requiredFields": ["offerCTC", "offerDate", "joiningDate"],
            "subStatuses": ["Offer Sent", "Negotiating", "Offer Accepted", "Offer Declined"],
            "failureSignals": ["Counter offer", "Delay in acceptance", "Family concerns"],
            "automations": [
                _on_enter(
                    _task("Follow up on offer acceptance daily", priority="urgent", due_in_hours=24, recurring=True),
                    _notify("\U0001f389 Offer rolled out - track acceptance!"),
                ),
                _on_duration(4320, _task("URGENT: Offer pending for 3 days - escalate", priority="urgent")),
            ],
        },
        {
            "name": "Offer Accepted",
            "order": 7,
            "color": "#22c55e",
            "probability": 85,
            "description": "Candidate confirmed joining",
            "intent": "Ensure smooth onboarding",
            "requiredFields": ["acceptanceDate", "joiningDate"],
            "subStatuses": ["Serving Notice", "Free to Join", "Background Check"],
            "failureSignals": ["Notice period extension", "Counter offer received"],
            "automations": [
                _on_enter(
                    _task("Weekly check-in until joining date", due_in_hours=168, recurring=True),
                    _notify("✅ Offer accepted! Monitor until joining."),
                ),
            ],
        },
        {
            "name": "Joined",
            "order": 8,
            "color": "#059669",
            "probability": 95,
            "description": "Candidate successfully joined",
            "intent": "Placement successful",
            "requiredFields": ["actualJoiningDate"],
            "subStatuses": ["Joined", "On Probation"],
            "failureSignals": [],
            "automations": [
                _on_enter(
                    _task("Invoice client for recruitment fee", priority="high", due_in_hours=24),
                    _task("Post-joining follow-up (30 days)", due_in_hours=720),
                ),
            ],
        },
        {
            "name": "Dropout / No-show",
            "order": 9,
            "color": "#ef4444",
            "probability": 0,
            "description": "Candidate did not join or left early",
            "intent": "Track failure reasons",
            "requiredFields": ["dropoutReason", "dropoutStage"],
            "subStatuses": ["No Show", "Resigned Early", "Counter Offer", "Personal Reasons"],
            "failureSignals": [],
            "automations": [
                _on_enter(
                    _task("Document learnings and find replacement", priority="high"),
                    _notify("⚠️ Dropout recorded - analyze reason"),
                ),
            ],
        },
    ],
}


SME_TEMPLATE: dict[str, Any] = {
    "id": "sme",
    "name": "SME / Founder-Led Sales",
    "description": "Minimal, human, founder-friendly pipeline",
    "pipelineStages": [
        {
            "name": "Someone Interested",
            "order": 1,
            "color": "#94a3b8",
            "probability": 10,
            "description": "Name + phone exists",
            "intent": "Just captured basic info",
            "requiredFields": ["name", "contact"],
            "subStatuses": [],
            "failureSignals": ["No response in 48 hours"],
            "automations": [
                _on_enter(_task("Reach out to new lead", priority="high", due_in_hours=24)),
                _on_duration(2880, _task("REMINDER: Follow up with lead", priority="high")),
            ],
        },
        {
            "name": "Talked Once",
            "order": 2,
            "color": "#60a5fa",
            "probability": 25,
            "description": "First real conversation happened",
            "intent": "Built initial rapport",
            "requiredFields": ["firstCallNotes"],
            "subStatuses": [],
            "failureSignals": ["Vague interest", "Cannot reach again"],
            "automations": [_on_enter(_task("Schedule follow-up call", due_in_hours=72))],
        },
        {
            "name": "Understood Need",
            "order": 3,
            "color": "#8b5cf6",
            "probability": 40,
            "description": "Problem + budget roughly known",
            "intent": "Qualified the opportunity",
            "requiredFields": ["problem", "budget"],
            "subStatuses": [],
            "failureSignals": ["Budget too low", "Not urgent"],
            "automations": [_on_enter(_task("Prepare solution/quote", due_in_hours=48))],
        },
        {
            "name": "Offered Solution",
            "order": 4,
            "color": "#f59e0b",
            "probability": 55,
            "description": "Price / proposal discussed",
            "intent": "Ball is in their court",
            "requiredFields": ["quotedPrice", "proposalDate"],
            "subStatuses": [],
            "failureSignals": ["Price shock", "Comparing alternatives"],
            "automations": [
                _on_enter(_task("Follow up on proposal", due_in_hours=72)),
                _on_duration(7200, _task("Check if still interested", priority="medium")),
            ],
        },
        {
            "name": "Thinking",
            "order": 5,
            "color": "#3b82f6",
            "probability": 65,
            "description": "No decision yet, considering",
            "intent": "Keep warm, nurture",
            "requiredFields": ["thinkingReason"],
            "subStatuses": ["Budget Approval", "Timing Issues", "Comparing Options", "Internal Discussion"],
            "failureSignals": ["Going silent", "Delaying indefinitely"],
            "automations": [_on_enter(_task("Check-in: Any updates?", due_in_hours=168, recurring=True))],
        },
        {
            "name": "Yes (Verbal)",
            "order": 6,
            "color": "#10b981",
            "probability": 80,
            "description": "Agreed in principle",
            "intent": "Close the paperwork",
            "requiredFields": ["verbalYesDate"],
            "subStatuses": [],
            "failureSignals": ["Taking too long to commit"],
            "automations": [
                _on_enter(
                    _task("Send invoice/agreement", priority="high", due_in_hours=12),
                    _notify("\U0001f389 Verbal yes! Get payment ASAP"),
                ),
            ],
        },
        {
            "name": "Payment Pending",
            "order": 7,
            "color": "#f59e0b",
            "probability": 85,
            "description": "Invoice sent, awaiting payment",
            "intent": "Money in the bank",
            "requiredFields": ["invoiceNumber", "invoiceDate"],
            "subStatuses": [],
            "failureSignals": ["Payment delay", "Asking for discounts"],
            "automations": [
                _on_enter(_task("Daily payment reminder", priority="high", due_in_hours=24, recurring=True)),
            ],
        },
        {
            "name": "Closed - Won",
            "order": 8,
            "color": "#059669",
            "probability": 100,
            "description": "Money received",
            "intent": "Success! Deliver and delight",
            "requiredFields": ["paymentDate", "amountReceived"],
            "subStatuses": [],
            "failureSignals": [],
            "automations": [
                _on_enter(
                    _task("Start delivery/onboarding", priority="high", due_in_hours=24),
                    _notify("\U0001f680 Payment received! Start work!"),
                ),
            ],
        },
        {
            "name": "Closed - Lost",
            "order": 9,
            "color": "#ef4444",
            "probability": 0,
            "description": "Not happening",
            "intent": "Learn and move on",
            "requiredFields": ["lostReason"],
            "subStatuses": ["Price Too High", "Went with Competitor", "Not Right Time", "Not Interested"],
            "failureSignals": [],
            "automations": [_on_enter(_task("Document learnings", due_in_hours=24))],
        },
    ],
}


INDUSTRY_TEMPLATES: dict[str, dict[str, Any]] = {
    "recruitment": RECRUITMENT_TEMPLATE,
    "sme": SME_TEMPLATE,
}


def get_industry_template(industry_id: str) -> dict[str, Any] | None:
    template = INDUSTRY_TEMPLATES.get(industry_id)
    if template is None:
        return None
    return copy.deepcopy(template)


def list_industry_templates() -> list[str]:
    return sorted(INDUSTRY_TEMPLATES)
