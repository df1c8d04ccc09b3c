"""Prompt text for single-message analysis and summaries."""

from inbox_triage.models.domain.analysis_domain import AnalysisRequest, UserContext
from inbox_triage.models.domain.message_domain import NormalizedMessage

SYSTEM_PROMPT = """You are an expert email analysis AI that helps professionals prioritize and understand their emails.

Your analysis should be:
- Objective and factual
- Focused on actionable insights
- Considerate of professional context
- Accurate in priority assessment
- Sensitive to urgency indicators

Always respond with valid JSON matching the exact format requested."""

RESPONSE_FORMAT = """{
  "summary": "2-3 sentence summary",
  "priority": {
    "level": "critical|high|medium|low",
    "score": 0.0-1.0,
    "reasoning": "explanation"
  },
  "sentiment": {
    "type": "positive|negative|neutral|mixed",
    "score": 0.0-1.0,
    "reasoning": "explanation"
  },
  "urgency": {
    "level": "immediate|today|this_week|when_convenient",
    "score": 0.0-1.0,
    "reasoning": "explanation"
  },
  "actionRequired": true/false,
  "suggestedActions": ["action1", "action2"],
  "keyTopics": ["topic1", "topic2"],
  "vipContact": true/false,
  "vipScore": 0.0-1.0,
  "confidence": 0.0-1.0
}"""


def build_analysis_prompt(request: AnalysisRequest, body_char_limit: int = 2000) -> str:
    message = request.message
    context = request.user_context or UserContext()
    vip_contacts = ", ".join(context.vip_contacts) or "None"

    return f"""Analyze this email and provide a comprehensive analysis in JSON format:

Email Details:
- Subject: {message.subject}
- From: {message.sender.display()}
- Received: {message.received_at.isoformat()}
- Attachments: {"yes" if message.has_attachments else "no"}
- Body: {message.preferred_body()[:body_char_limit]}

User Context:
- Role: {context.role}
- Industry: {context.industry}
- VIP Contacts: {vip_contacts}

Please provide analysis in this exact JSON format:
{RESPONSE_FORMAT}"""


SUMMARY_SYSTEM_PROMPT = """You are an expert email summarizer. Create concise, actionable summaries that capture the key points and required actions.

Always respond with valid JSON matching the exact format requested."""


def build_summary_prompt(message: NormalizedMessage, body_char_limit: int = 2000) -> str:
    return f"""Summarize this email in 2-3 sentences and extract 3-5 key points:

Subject: {message.subject}
From: {message.sender.display()}

{message.preferred_body()[:body_char_limit]}

Respond in this exact JSON format:
{{
  "summary": "2-3 sentence summary",
  "keyPoints": ["point1", "point2", "point3"]
}}"""
