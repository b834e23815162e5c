# /autoreply/config/strings.py

# User-facing defaults, kept in one place so they can be edited or localized
# without touching the decision logic.

DEFAULT_AFTER_HOURS_MESSAGE = (
    "Thank you for your message! We're currently outside business hours. "
    "We'll get back to you soon."
)

DEFAULT_HOLIDAY_MESSAGE = (
    "Thank you for your message! We're currently on holiday. "
    "We'll get back to you when we return."
)

DEFAULT_SYSTEM_PROMPT = "You are a helpful customer service representative for our business."

DEFAULT_COMPANY_NAME = "Our Company"
DEFAULT_PRICING = "Contact us for pricing"
DEFAULT_SENDER_NAME = "Customer"

DEFAULT_COACH_SETTINGS_NAME = "Default Coach Settings"
DEFAULT_COACH_SETTINGS_DESCRIPTION = "Default WhatsApp settings for coach"

HUMAN_FOLLOWUP_REASON = "auto_reply_generation_failed"
