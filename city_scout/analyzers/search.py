import os

from openai import AsyncOpenAI

from city_scout.utils import llm_call_with_retry

SYSTEM_PROMPT = (
    "You are a helpful assistant with web search capabilities. "
    "Provide accurate and up-to-date information."
)

NO_RESULT = "I couldn't find any relevant information. Please try again."


async def advanced_search(query: str) -> str:
    """One-shot web-backed answer for a free-text place or travel query."""
    if not query.strip():
        raise ValueError("Invalid query parameter")
    client = AsyncOpenAI(api_key=os.getenv("OPENAI_API_KEY"))
    response = await llm_call_with_retry(
        client.responses.create,
        model="gpt-4o",
        instructions=SYSTEM_PROMPT,
        input=query,
        tools=[{"type": "web_search"}],
    )
    return response.output_text or NO_RESULT
