"""ditto: a Slack bot that streams LLM answers into threads."""
