from __future__ import annotations

ANALYSIS_INSTRUCTIONS = (
    "You are analyzing a YouTube video transcript to extract the most valuable insights. Please provide:\n\n"
    "1. A concise summary (2-3 paragraphs) explaining what the video is about and its main thesis\n"
    "2. Key Revelations - the most important, surprising, or actionable insights that viewers shouldn't miss. "
    "These are the transformative gems that make the video worth watching\n"
    "3. Main Takeaways - 3-5 bullet points for quick reference\n\n"
)

RESPONSE_FORMAT = (
    "Please respond with a JSON object in this exact format:\n"
    "{\n"
    '  "summary": "A 2-3 paragraph summary...",\n'
    '  "revelations": [\n'
    '    "First key revelation...",\n'
    '    "Second key revelation...",\n'
    '    "Third key revelation..."\n'
    "  ],\n"
    '  "takeaways": [\n'
    '    "First takeaway...",\n'
    '    "Second takeaway...",\n'
    '    "Third takeaway..."\n'
    "  ]\n"
    "}"
)


def build_analysis_prompt(transcript: str, *, title: str | None = None, language: str | None = None) -> str:
    prompt = ANALYSIS_INSTRUCTIONS
    if title:
        prompt += f"Video title: {title}\n\n"
    prompt += f"Transcript:\n{transcript.strip()}\n\n{RESPONSE_FORMAT}"
    if language:
        prompt += f"\n\nWrite the values in {language}."
    return prompt
