from typing import List

from ..api.llm_gateway import ChatMessage
from ..models.analysis import AuthorProfile, PodcastRecord

SYSTEM_PROMPT = (
    "You are an analyst for a service that books authors as podcast guests. "
    "Reply with a single JSON object and nothing else."
)


def _join(values: List[str]) -> str:
    return ", ".join(values) if values else "N/A"


def build_author_analysis_messages(author: AuthorProfile) -> List[ChatMessage]:
    books = "\n".join(
        f"""
  Title: {book.title}
  Description: {book.description or 'N/A'}
  Genre: {_join(book.genre)}
  Target Audience: {_join(book.target_audience)}"""
        for book in author.books
    ) or "  None listed"

    prompt = f"""Please analyze this author's profile and their work:

Author Name: {author.name}
Bio: {author.bio or 'N/A'}
Books:{books}

Return a JSON object with these keys:
- "topics": main topics and themes (list of up to 5 strings)
- "expertiseLevel": one of "beginner", "intermediate", "expert"
- "communicationStyle": one of "casual", "professional", "academic", "storyteller"
- "keyPoints": key talking points (list of up to 5 strings)
- "confidence": your confidence in this analysis, a number between 0 and 1
"""
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": prompt},
    ]


def build_podcast_analysis_messages(podcast: PodcastRecord) -> List[ChatMessage]:
    length = f"{podcast.average_episode_length:g} minutes" if podcast.average_episode_length is not None else "Unknown"
    prompt = f"""Please analyze this podcast's content and style:

Title: {podcast.title}
Description: {podcast.description or 'N/A'}
Publisher: {podcast.publisher or 'N/A'}
Categories: {_join(podcast.categories)}
Average Episode Length: {length}
Total Episodes: {podcast.total_episodes if podcast.total_episodes is not None else 'Unknown'}

Return a JSON object with these keys:
- "hostStyle": one of "interview", "narrative", "educational", "debate"
- "audienceLevel": one of "beginner", "intermediate", "expert", "mixed"
- "topicDepth": one of "shallow", "moderate", "deep"
- "guestRequirements": an object with
    - "minimumExpertise": one of "beginner", "intermediate", "expert", "lead"
    - "preferredTopics": up to 3 topics the show wants guests to cover
    - "communicationPreference": list of preferred guest communication styles (e.g. "professional", "casual", "academic", "storyteller")
- "topicalFocus": main topical focus areas (list of up to 5 strings)
- "confidence": your confidence in this analysis, a number between 0 and 1
"""
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": prompt},
    ]


def build_feature_extraction_messages(podcast: PodcastRecord) -> List[ChatMessage]:
    prompt = f"""Analyze this podcast and extract key features:

Title: {podcast.title}
Description: {podcast.description or 'N/A'}
Publisher: {podcast.publisher or 'N/A'}
Categories: {_join(podcast.categories)}

Return a JSON object with these keys:
- "mainTopics": list of main topics
- "contentStyle": an object with booleans "isInterview", "isNarrative", "isEducational", "isDebate"
- "complexityLevel": one of "beginner", "intermediate", "advanced"
- "productionQuality": estimated production quality from 0 to 100
- "hostingStyle": list of short descriptors of how the show is hosted
"""
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": prompt},
    ]
