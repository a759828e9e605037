"""Prompt templates for LLM-assisted receipt search.

Prompts are versioned so recorded attempts can be traced to the wording
that produced them.
"""

from __future__ import annotations

from dataclasses import dataclass

# v1.0: query generation and mail invoice analysis
PROMPT_VERSION = "v1.0"


def format_amount(amount_minor: int | None) -> str:
    """Format minor units as "€12.34" for prompts."""
    if amount_minor is None:
        return "unknown"
    return f"€{abs(amount_minor) / 100:.2f}"


@dataclass
class SearchQueryPrompt:
    """Prompt template for mailbox search query suggestions.

    Attributes:
        version: Prompt version.
        system_prompt: System message setting LLM behavior.
        user_template: Template for user message with placeholders.
    """

    version: str = PROMPT_VERSION

    system_prompt: str = """You generate Gmail search terms that find the invoice or receipt for a bank transaction.

Types (use exactly these):
- "invoice_number": Invoice/reference numbers only (e.g., "r-2024.014", "INV-12345")
- "company_name": Just the company name, one word (e.g., "ouster", "netflix", "amazon")
- "email_domain": Email domain with from: prefix (e.g., "from:ouster.com")
- "fallback": Company + keyword (e.g., "ouster invoice")

CRITICAL RULES:
1. Extract ONLY the company name - "Money added from OUSTER, INC." -> company is "ouster"
2. NEVER include bank transaction phrases like "money added from", "payment to", etc.
3. NEVER use generic words alone: "money", "payment", "added", "from"
4. Keep suggestions SHORT - 1-2 words max (except fallback which can be 2-3)
5. Sort by most likely to find the invoice (best first)
6. No duplicates, no UUIDs unless they're actual invoice numbers

Return ONLY valid JSON:
{"suggestions": [{"query": "r-2024.014", "type": "invoice_number"}, {"query": "ouster", "type": "company_name"}]}"""

    user_template: str = """Generate 4-5 Gmail search terms to find an invoice/receipt for this bank transaction.

Transaction:
- Bank text: "{name}"
- Partner: {partner}
- Amount: {amount}
{optional_lines}
{partner_block}"""

    def format_user_message(
        self,
        name: str,
        partner: str | None,
        amount: int | None,
        description: str | None = None,
        reference: str | None = None,
        partner_name: str | None = None,
        email_domains: list[str] | None = None,
        website: str | None = None,
    ) -> str:
        """Format the user message with transaction and partner details."""
        optional = []
        if description:
            optional.append(f"- Description: {description}")
        if reference:
            optional.append(f"- Reference: {reference}")

        partner_block = ""
        if partner_name:
            partner_block = (
                "Known partner info:\n"
                f"- Company: {partner_name}\n"
                f"- Email domains: {', '.join(email_domains or []) or 'unknown'}\n"
                f"- Website: {website or 'unknown'}"
            )

        return self.user_template.format(
            name=name,
            partner=partner or "Unknown",
            amount=format_amount(amount),
            optional_lines="\n".join(optional),
            partner_block=partner_block,
        )


@dataclass
class EmailInvoicePrompt:
    """Prompt template for deciding whether a mail is (or links to) an invoice."""

    version: str = PROMPT_VERSION

    system_prompt: str = """You analyze e-mails for invoice-related content.

Determine:
1. Does this email contain LINKS to download/view an invoice? Extract all invoice-related URLs.
2. Is the EMAIL ITSELF an invoice (e.g., receipt email, confirmation with itemized charges)?

Return JSON only:
{
  "hasInvoiceLink": true/false,
  "invoiceLinks": [{"url": "...", "anchorText": "..."}],
  "isMailInvoice": true/false,
  "mailInvoiceConfidence": 0.0-1.0,
  "reasoning": "brief explanation"
}"""

    user_template: str = """Analyze this email for invoice-related content.

Email:
From: {sender}
Subject: {subject}
Body (excerpt): {body}

Transaction we're matching:
- Description: {name}
- Partner: {partner}
- Amount: {amount}"""

    def format_user_message(
        self,
        sender: str | None,
        subject: str | None,
        body: str,
        name: str,
        partner: str | None,
        amount: int | None,
    ) -> str:
        """Format the user message with the mail excerpt and transaction."""
        return self.user_template.format(
            sender=sender or "unknown",
            subject=subject or "",
            body=body,
            name=name,
            partner=partner or "Unknown",
            amount=format_amount(amount),
        )
