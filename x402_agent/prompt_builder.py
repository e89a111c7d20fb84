"""
Prompt Builder - one prompt string from the preamble, the intent mode, the
tool catalog, a note on attached images, a bounded slice of history and the
new user message. The image bytes themselves travel next to the prompt.
"""

import json

from .intent import DOCUMENTATION, MODE_DESCRIPTIONS

PREAMBLE = """You are a specialized AI assistant for identity validation.
Your goal is to help users to:
1. Answer questions about the available verification services
2. Execute validations when the user provides the required data
"""

INSTRUCTIONS = """
## RESPONSE INSTRUCTIONS
- Always respond in English unless explicitly told otherwise.
- Use Markdown for explanations; use tables for structured data.

### For TOOL EXECUTION:
1. Identify the service needed
2. Check for required parameters
3. Ask for missing data before executing
4. Execute by answering with ONLY this JSON object: {"tool": "tool_id", "args": { ... }}

RULES:
- NEVER execute with missing required parameters
- NEVER guess parameter values
"""

IMAGE_PROCESSING = """
## IMAGE PROCESSING
- You have received {count} image(s)
- Identify the document type and extract the data the tool needs
"""

RETRY_AFTER_PAYMENT = """
## PAYMENT COMPLETED
Payment transaction {tx} has been confirmed. Repeat the tool call the user
requested before the payment, with the same tool and the same args, as a
single JSON object.
"""


class PromptBuilder:
    def __init__(self, catalog, history_window=10):
        self.catalog = catalog
        self.history_window = history_window

    def tools_section(self):
        tools = self.catalog.to_manifest()["endpoints"]
        return f"\n## AVAILABLE TOOLS\n{json.dumps(tools, indent=2)}\n"

    def recent_history(self, history):
        if not history or self.history_window <= 0:
            return []
        return list(history)[-self.history_window:]

    def mode_section(self, intent):
        description = MODE_DESCRIPTIONS.get(intent, MODE_DESCRIPTIONS[DOCUMENTATION])
        return f"\n## CURRENT MODE: {intent.upper()}\n{description}\n"

    def image_section(self, images):
        if not images:
            return ""
        return IMAGE_PROCESSING.format(count=len(images))

    def build(self, user_message, history=None, payment_tx=None, images=None, intent=DOCUMENTATION):
        prompt = PREAMBLE
        prompt += self.mode_section(intent)
        prompt += self.tools_section()
        prompt += INSTRUCTIONS
        prompt += self.image_section(images)
        prompt += f"\n## CURRENT CONTEXT\n- Available payment: {payment_tx or 'None'}\n"
        if payment_tx:
            prompt += RETRY_AFTER_PAYMENT.format(tx=payment_tx)

        prompt += "\n\n## CONVERSATION HISTORY\n"
        for msg in self.recent_history(history):
            role = "**User**" if msg.get("role") == "user" else "**Assistant**"
            prompt += f"{role}: {msg.get('content', '')}\n\n"

        prompt += f"**User**: {user_message}\n"
        return prompt
