"""
Prompt templates for conversational tip entry parsing.

The user's (already sanitized) text is embedded in a prompt that spells out
the exact JSON shape and walks through three worked examples: a complete
shift, a shift with qualitative notes, and one too vague to parse.
"""

PARSE_SYSTEM_PROMPT = """\
You are an AI assistant that helps service workers (servers, bartenders,
delivery drivers, etc.) log their tip earnings.

Your job is to parse natural language input into structured data.

Be:
- Flexible and generous with parsing (people type casually)
- Smart about inferring shift types from context
- Honest about confidence levels
- Helpful when clarification is needed

Always return valid JSON in the exact format requested, with no other text.
"""


def build_parse_prompt(user_input: str) -> str:
    """Embed sanitized user text in the parsing instructions."""
    return f"""\
Parse this tip entry from a service worker:

"{user_input}"

Extract the following information and return as JSON:
{{
  "tips_earned": number (required - in dollars),
  "hours_worked": number (required - in decimal hours),
  "shift_type": "breakfast" | "lunch" | "dinner" | "late_night" (optional - infer from context),
  "notes": string (optional - any additional context),
  "confidence": 0.0-1.0 (required - how confident are you in this parse),
  "needs_clarification": boolean (required - true if critical info is missing),
  "clarification_question": string (optional - if needs_clarification is true)
}}

Guidelines:
- Extract dollar amounts (handle $, "dollars", "bucks", etc.)
- Parse time durations (handle "hours", "hrs", "h", decimals like "3.5 hours")
- Infer shift_type from time indicators (morning/breakfast, lunch, dinner/evening/night, late night)
- If tips or hours are missing, set needs_clarification to true
- confidence should be 0.9+ if all info is clear, 0.7-0.9 if inferred, <0.7 if guessing
- Be generous with parsing - try to extract something useful even from vague input
- notes should capture mood, location, or other context from the message

Examples:
Input: "Made $85 in 5 hours tonight"
Output: {{"tips_earned": 85, "hours_worked": 5, "shift_type": "dinner", "notes": null, "confidence": 0.95, "needs_clarification": false}}

Input: "Lunch shift was good, earned 45 bucks in 3.5 hours"
Output: {{"tips_earned": 45, "hours_worked": 3.5, "shift_type": "lunch", "notes": "good", "confidence": 0.95, "needs_clarification": false}}

Input: "Slow dinner"
Output: {{"tips_earned": 0, "hours_worked": 0, "shift_type": "dinner", "notes": "Slow dinner", "confidence": 0.3, "needs_clarification": true, "clarification_question": "How much did you make and how long did you work?"}}
"""
