from __future__ import annotations

# Session states
STATE_ACTIVE = "active"
STATE_AWAITING_PHOTO = "awaiting_photo"
STATE_AWAITING_DOB = "awaiting_dob"
STATE_AWAITING_FOLLOWUP = "awaiting_followup"
STATE_AWAITING_RULES_ACK = "awaiting_rules_ack"
STATE_EVALUATING = "evaluating"
STATE_APPROVED = "approved"
STATE_REJECTED = "rejected"
STATE_PENDING_REVIEW = "pending_review"
STATE_FAILED_TIMEOUT = "failed_timeout"
STATE_TERMINATED = "terminated"
STATE_EXPIRED = "expired"

IN_PROGRESS_STATES = [
    STATE_ACTIVE,
    STATE_AWAITING_PHOTO,
    STATE_AWAITING_DOB,
    STATE_AWAITING_FOLLOWUP,
    STATE_AWAITING_RULES_ACK,
    STATE_EVALUATING,
]

# A pending review still blocks a new attempt until an admin resolves it.
OPEN_STATES = IN_PROGRESS_STATES + [STATE_PENDING_REVIEW]

FINAL_STATES = [
    STATE_APPROVED,
    STATE_REJECTED,
    STATE_FAILED_TIMEOUT,
    STATE_TERMINATED,
    STATE_EXPIRED,
]

FAILED_STATES = [STATE_REJECTED, STATE_FAILED_TIMEOUT]

# States that write a Result on entry.
RESULT_STATES = [STATE_APPROVED, STATE_REJECTED, STATE_FAILED_TIMEOUT, STATE_PENDING_REVIEW]

# Question types
Q_OPEN = "open"
Q_BOOLEAN = "boolean"
Q_CHOICE = "choice"
Q_PHOTO = "photo"
Q_DOB = "dob"

QUESTION_TYPES = [Q_OPEN, Q_BOOLEAN, Q_CHOICE, Q_PHOTO, Q_DOB]

# Verdicts
VERDICT_APPROVE = "APPROVE"
VERDICT_REJECT = "REJECT"
VERDICT_REVIEW = "REVIEW"

# Timer kinds
TIMER_RESPONSE = "response"
TIMER_REMINDER = "reminder"
TIMER_EXPIRY = "expiry"

# Admin actions
ADMIN_ACTIONS = ["skip", "end", "reset", "approve", "reject"]

# Error kinds carried by typed results
ERR_TRANSIENT_IO = "transient_io"
ERR_LLM_UNAVAILABLE = "llm_unavailable"
ERR_SCHEMA_VIOLATION = "schema_violation"
ERR_PRECONDITION = "precondition_failure"
ERR_INVARIANT = "invariant_violation"

# Store collections
COLLECTIONS = {
    "sessions": "interview_sessions",
    "settings": "interview_settings",
    "questions": "interview_questions",
    "results": "interview_results",
    "stats": "interview_stats",
    "eval_prompts": "interview_eval_prompts",
    "selection_contexts": "interview_selection_contexts",
}

YES_WORDS = {"yes", "y", "yeah", "yep", "sure", "ok", "okay"}
NO_WORDS = {"no", "n", "nope", "nah"}

AGREE_MARKERS = ["i agree", "agree", "accept", "yes", "okay", "ok", "sure", "understood"]
DISAGREE_MARKERS = ["disagree", "don't agree", "do not agree", "not agree", "refuse", "no"]

MAX_FOLLOWUPS = 2
FOLLOWUP_MIN_WORDS = 6
FOLLOWUP_PROBABILITY = 0.35
MAX_DOB_CLARIFICATIONS = 3
DEDUP_WINDOW_SECONDS = 30
SEEN_EVENTS_LIMIT = 50

# Score band below the pass threshold that still goes to manual review.
REVIEW_BAND = 20
FALLBACK_SCORE = 70
FALLBACK_FEEDBACK = "Automatic scoring was unavailable; queued for manual review."

SELECTION_TTL_SECONDS = 30 * 60
REMINDER_SWEEP_INTERVAL = 2 * 60 * 60
EXPIRY_SWEEP_INTERVAL = 24 * 60 * 60
STUCK_EVALUATION_SECONDS = 10 * 60
TRANSPORT_TIMEOUT = 10.0

DEFAULT_SETTINGS = {
    "enabled": False,
    "main_chat_link": "",
    "welcome_template": (
        "Welcome {name}! Before you join the main group we have a short interview. "
        "Answer each question in this chat; it takes about ten minutes."
    ),
    "pass_template": "Congratulations {name}, you passed the interview ({score}%). Join the main group here: {link}",
    "fail_template": "Thank you {name}. Unfortunately you did not pass the interview this time.",
    "questions_ref": "default",
    "pass_threshold": 70,
    "max_retries": 3,
    "max_reminders": 3,
    "response_timeout": 5 * 60,
    "reminder_timeout": 10 * 60,
    "session_expiry": 24 * 60 * 60,
    "rules_ack_attempts_max": 3,
    "exempt_operators": [],
    "auto_remove_on_fail": False,
    "use_llm": True,
}

GROUP_RULES = (
    "Group rules:\n"
    "1. Respect every member; no insults, hate speech or harassment.\n"
    "2. No spam, unsolicited adverts or chain messages.\n"
    "3. No adult or violent content.\n"
    "4. Keep personal disputes out of the group; contact an admin instead.\n"
    "5. Admin decisions are final."
)

RULES_ACK_PROMPT = "Do you agree to follow these rules? Reply \"Yes, I agree\" to continue."

DEFAULT_EVAL_PROMPT = (
    "You are screening a new member for a friendly online community. "
    "Read the interview below and decide whether the candidate should be admitted.\n\n"
    "${responses}\n\n"
    "Reply with JSON only: "
    '{"decision": "APPROVE|REJECT|REVIEW", "score": 0-100, "feedback": "at most 150 characters"}'
)

DEFAULT_QUESTIONS = [
    {
        "id": "intro",
        "text": "Please introduce yourself. What is your name and where are you based?",
        "type": Q_OPEN,
        "required": True,
        "weight": 10,
    },
    {
        "id": "photo",
        "text": "Please send a clear photo of yourself.",
        "type": Q_PHOTO,
        "required": True,
        "weight": 10,
    },
    {
        "id": "dob",
        "text": "What is your date of birth? Day and month are enough, for example 8/12.",
        "type": Q_DOB,
        "required": True,
        "weight": 5,
    },
    {
        "id": "motivation",
        "text": "Why do you want to join this community?",
        "type": Q_OPEN,
        "required": True,
        "weight": 15,
        "ai_criteria": "Genuine, specific reasons; not only promotion or spam.",
    },
    {
        "id": "interests",
        "text": "What are your interests and hobbies?",
        "type": Q_OPEN,
        "required": True,
        "weight": 10,
    },
    {
        "id": "contribution",
        "text": "How would you contribute to the group?",
        "type": Q_OPEN,
        "required": True,
        "weight": 15,
        "ai_criteria": "Concrete ways to add value to conversations or events.",
    },
    {
        "id": "conflict",
        "text": "How do you handle disagreements with other members?",
        "type": Q_OPEN,
        "required": True,
        "weight": 15,
        "ai_criteria": "Calm, respectful, willing to involve admins instead of escalating.",
    },
    {
        "id": "read_description",
        "text": "Have you read the group description?",
        "type": Q_BOOLEAN,
        "required": True,
        "weight": 5,
        "correct_value": "yes",
    },
    {
        "id": "weekly_active",
        "text": "Will you be active in the group at least once a week?",
        "type": Q_BOOLEAN,
        "required": True,
        "weight": 5,
        "correct_value": "yes",
    },
    {
        "id": "topic",
        "text": "Which topic interests you most?",
        "type": Q_CHOICE,
        "required": True,
        "weight": 10,
        "choices": ["Tech", "Sports", "Entertainment", "Business"],
    },
]

HELP_TEXT = (
    "Interview commands:\n"
    "{p}interview - start your interview\n"
    "{p}status - show your progress\n"
    "{p}retry - start a new attempt after a failed one\n"
    "\n"
    "Admin commands:\n"
    "{p}skip|end|reset|approve|reject @user - manage a candidate\n"
    "{p}pending - list interviews waiting for review\n"
    "{p}transcript @user - show a candidate's answers\n"
    "{p}interviewsettings show|enable|disable|threshold N|retries N|reminders N|"
    "timeout M|reminder M|expiry H|autokick on/off|link URL|ai on/off|exempt @user|"
    "unexempt @user|welcome TEXT|pass TEXT|fail TEXT\n"
    "{p}interviewstats - interview statistics\n"
    "{p}questions list|add TYPE TEXT [| a, b]|remove ID|move ID POS|reset\n"
    "{p}evalprompt show|set TEXT|reset"
)
