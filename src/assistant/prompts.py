"""Prompts and locale tables for text chat, the CV builder, photo analysis and voice."""

import json
import re
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from src.assistant.models import HistoryMessage

DEFAULT_LOCALE = "en"

_TURKISH_CHARS = re.compile(r"[çğıöşüÇĞİÖŞÜ]")
_TURKISH_WORDS = re.compile(
    r"\b(merhaba|arıyorum|istiyorum|lazım|lütfen|teşekkür|evet|hayır|nerede|nasıl|bölge"
    r"|ihtiyac|ustası|ustasıyım|yapıyorum|londrada|şuan|temizlik|boyacı|tesisatçı)\b",
    re.IGNORECASE,
)

# Keyword fallback used when the model detects a service request but leaves
# serviceKey empty. First matching key wins.
SERVICE_KEYWORDS: dict[str, list[str]] = {
    "cleaning": ["temizlik", "temizlikçi", "temizligi", "cleaning", "تنظيف", "sprzątanie", "curățenie"],
    "plumbing": ["tesisat", "tesisatçı", "musluk", "su kaçağı", "plumb", "pipe", "leak", "سباكة", "hydraulik"],
    "electrical": ["elektrik", "elektrikçi", "electri", "wiring", "كهربائي", "elektryk"],
    "painting": ["boya", "boyacı", "paint", "دهان", "malarz", "zugrav"],
    "moving": ["nakliyat", "taşınma", "moving", "removals"],
    "appliance_repair": ["beyaz eşya", "buzdolabı", "çamaşır", "appliance", "washing machine", "fridge"],
    "carpentry": ["marangoz", "mobilya", "carpent", "furniture"],
    "hvac": ["kombi", "kalorifer", "boiler", "heating", "klima", "air condition"],
    "locksmith": ["çilingir", "kilit", "locksmith", "lock"],
    "gardening": ["bahçe", "garden", "lawn"],
    "pest_control": ["haşere", "böcek", "pest", "rodent"],
    "roofing": ["çatı", "roof", "gutter"],
}


def detect_locale(message: str, locale: str | None = None) -> str:
    """Return ``tr`` when the message is recognizably Turkish, else ``locale``."""
    if _TURKISH_CHARS.search(message) or _TURKISH_WORDS.search(message):
        return "tr"
    return locale or DEFAULT_LOCALE


def infer_service_key(message: str) -> str | None:
    text = message.lower()
    for key, keywords in SERVICE_KEYWORDS.items():
        if any(keyword in text for keyword in keywords):
            return key
    return None


def build_chat_system_prompt(active_regions: Sequence[str], locale: str = DEFAULT_LOCALE) -> str:
    """System instructions for the text chat loop."""
    regions = ", ".join(active_regions) or "London, Manchester, Birmingham, Istanbul, Ankara"
    photo_question = (
        "Sorunu daha iyi anlamamız için fotoğraf paylaşmak ister misiniz?"
        if locale == "tr"
        else "Would you like to share a photo so we can better understand the issue?"
    )
    return f"""You are WorkBee AI, a friendly assistant for JOBS, SERVICES and HIRING.

DETECT THE USER TYPE FIRST:
1. "iş arıyorum" / "looking for job" / "need work" = JOB SEEKER
   -> intent="find_job", userType="provider". Talk about their experience before offering buttons.
2. "temizlikçi lazım" / "need plumber" / "tamir" = SERVICE SEEKER
   -> intent="find_service", userType="customer", serviceKey=... Ask for the location.
3. "eleman arıyorum" / "hiring" = EMPLOYER
   -> intent="post_job", userType="employer".

RESPOND IN THE USER'S LANGUAGE. Turkish input gets a Turkish response.
Be conversational and friendly, never robotic.

ACTIVE REGIONS: {regions}

When intent="find_service" you MUST set serviceKey to one of:
cleaning, plumbing, electrical, painting, moving, appliance_repair, carpentry, hvac,
locksmith, gardening, pest_control, roofing.
Any cleaning/temizlik word means serviceKey="cleaning".

TOOLS:
- Call search_providers as soon as you know which service the user needs. Use the
  service slug (cleaning, plumbing, appliance-repair, ...) and the city if known.
- Call search_jobs for job seekers once you know their profession or location.
- Call get_service_locations when search_providers finds nothing or the user asks
  where a service is available.
- Call save_cv_data when a job seeker has given a headline and some experience.
- Call navigate_user when the user asks to open a page.
Always use English city names in tool calls (Londra -> London, İstanbul -> Istanbul).

PHOTO REQUESTS:
After identifying the service, ask: "{photo_question}" and set requestPhoto=true.

REGISTRATION:
- Never claim an account was created.
- Never set requiresRegistration=true for job seekers.
- For service seekers who are not logged in, set requiresRegistration=true and tell
  them to sign up to see matching professionals.

QUICK REPLIES:
When asking for a location, include quickReplyOptions built from the active regions,
e.g. [{{"label": "London", "value": "London"}}].

OUTPUT FORMAT:
Your final answer must be a single JSON object, with no surrounding text:
{{
  "understood": bool,
  "intent": "find_job" | "find_service" | "post_job" | "browse" | "help" | "unknown" | null,
  "userType": "customer" | "provider" | "employer" | null,
  "profession": string | null,
  "serviceType": string | null,
  "serviceKey": string | null,
  "locationArea": string | null,
  "needsMoreInfo": bool,
  "readyToAction": bool,
  "requiresRegistration": bool,
  "requestPhoto": bool,
  "suggestedAction": "continue_chat" | "show_providers" | "show_jobs" | "create_cv" | "navigate" | null,
  "navigateTo": string | null,
  "aiResponse": string,
  "nextQuestion": string | null,
  "quickReplyOptions": [{{"label": string, "value": string}}] | null
}}
Keep serviceKey and locationArea once they are known."""


def build_session_context(locale: str, is_logged_in: bool) -> str:
    """Short tag appended to the new user message."""
    return f"\n\n[SESSION: locale={locale}, loggedIn={str(is_logged_in).lower()}]"


@dataclass(frozen=True)
class VoiceLanguage:
    name: str
    instruction: str
    voice: str = "Kore"


VOICE_LANGUAGES: dict[str, VoiceLanguage] = {
    "tr": VoiceLanguage("Turkish", "Her zaman Türkçe konuş. Kısa ve öz yanıtlar ver.", "Orus"),
    "en": VoiceLanguage("English", "Always speak in English. Give short, concise answers."),
    "de": VoiceLanguage("German", "Sprich immer auf Deutsch. Gib kurze und prägnante Antworten."),
    "fr": VoiceLanguage(
        "French", "Parle toujours en français. Donne des réponses courtes et concises."
    ),
    "es": VoiceLanguage("Spanish", "Habla siempre en español. Da respuestas cortas y concisas."),
    "ar": VoiceLanguage("Arabic", "تحدث دائماً بالعربية. أعطِ إجابات قصيرة وموجزة."),
    "zh": VoiceLanguage("Chinese", "始终用中文回答。给出简短的回答。"),
    "ja": VoiceLanguage("Japanese", "常に日本語で話してください。短く簡潔に答えてください。"),
    "pt": VoiceLanguage("Portuguese", "Fale sempre em português. Dê respostas curtas e concisas."),
    "ru": VoiceLanguage("Russian", "Всегда говори на русском. Давай короткие и лаконичные ответы."),
    "hi": VoiceLanguage("Hindi", "हमेशा हिंदी में बोलें। संक्षिप्त और स्पष्ट उत्तर दें।"),
}


def voice_language(locale: str, default_voice: str = "Kore") -> VoiceLanguage:
    """Language instruction and voice persona for a voice session locale."""
    if locale in VOICE_LANGUAGES:
        return VOICE_LANGUAGES[locale]
    return VoiceLanguage(locale, f"Always respond in {locale} language.", default_voice)


def build_voice_system_prompt(language: VoiceLanguage, service_slugs: Sequence[str]) -> str:
    return f"""You are WorkBee AI voice assistant. Keep responses SHORT and conversational (max 2-3 sentences).

LANGUAGE: Detect the language the user is speaking and ALWAYS respond in the same language.
- Default language: {language.name}. {language.instruction}
- If the user switches language mid-conversation, switch with them immediately.

You help with finding services (cleaning, plumbing, etc.), finding jobs and creating CVs.
When you understand what service or job the user needs, call the appropriate tool.

SERVICE SLUGS: {", ".join(service_slugs)}
LOCATION MAPPING: Londra -> London, İstanbul -> Istanbul. Always use English city names when calling tools.

Keep voice responses SHORT. No more than 2-3 sentences. Be direct. Match the user's language."""


def build_history_summary(history: Sequence[HistoryMessage]) -> str | None:
    """Prior text conversation rendered as a synthetic context turn."""
    if not history:
        return None
    lines = [
        f"{'User' if entry.role == 'user' else 'Assistant'}: {entry.content}" for entry in history
    ]
    return (
        "[Previous conversation context]\n"
        + "\n".join(lines)
        + "\n[End context. Now respond to new voice input.]"
    )


@dataclass(frozen=True)
class EntryCopy:
    """Localized greeting and the three conversation entry points."""

    welcome: str
    find_service: str
    find_service_desc: str
    find_job: str
    find_job_desc: str
    post_job: str
    post_job_desc: str


ENTRY_COPY: dict[str, EntryCopy] = {
    "en": EntryCopy(
        welcome="Hello! I'm the WorkBee assistant. How can I help you today?",
        find_service="Looking for a Service",
        find_service_desc="Cleaning, repairs, painting...",
        find_job="I'm a Professional",
        find_job_desc="Browse job listings",
        post_job="Hiring Staff",
        post_job_desc="Post a job listing",
    ),
    "tr": EntryCopy(
        welcome="Merhaba! Ben WorkBee asistanı. Size nasıl yardımcı olabilirim?",
        find_service="Hizmet Arıyorum",
        find_service_desc="Temizlik, tamirat, boyama...",
        find_job="Ustayım, İş Arıyorum",
        find_job_desc="İş ilanlarını gör",
        post_job="Eleman Arıyorum",
        post_job_desc="İş ilanı ver",
    ),
    "pl": EntryCopy(
        welcome="Cześć! Jestem asystentem WorkBee. Jak mogę ci pomóc?",
        find_service="Szukam Usługi",
        find_service_desc="Sprzątanie, naprawy, malowanie...",
        find_job="Jestem Fachowcem",
        find_job_desc="Przeglądaj oferty pracy",
        post_job="Szukam Pracownika",
        post_job_desc="Dodaj ogłoszenie o pracę",
    ),
    "ro": EntryCopy(
        welcome="Bună! Sunt asistentul WorkBee. Cu ce te pot ajuta?",
        find_service="Caut un Serviciu",
        find_service_desc="Curățenie, reparații, vopsitorie...",
        find_job="Sunt Profesionist",
        find_job_desc="Vezi anunțuri de muncă",
        post_job="Caut Personal",
        post_job_desc="Postează un anunț de angajare",
    ),
}


def entry_copy(locale: str) -> EntryCopy:
    return ENTRY_COPY.get(locale, ENTRY_COPY[DEFAULT_LOCALE])


URGENCY_LEVELS = ("low", "medium", "high", "emergency")


def build_cv_chat_prompt(
    current_cv: dict[str, Any] | None, user_name: str | None, email: str | None, locale: str
) -> str:
    """System instructions for the conversational CV builder."""
    user = "Not logged in"
    if user_name or email:
        user = f"Name: {user_name or 'unknown'}, Email: {email or 'unknown'}"
    language = "Turkish" if locale == "tr" else "the user's language (English by default)"
    return f"""You are a friendly CV builder assistant helping users create professional, ATS-optimized resumes.

USER INFO:
{user}

CURRENT CV DATA:
{json.dumps(current_cv or {}, indent=2, ensure_ascii=False)}

LANGUAGE: respond in {language}.

YOUR TASK:
1. Have a natural conversation to gather CV information
2. Extract structured data from what the user tells you
3. Ask follow-up questions naturally (not like a form)
4. Acknowledge what you learned before asking more

EXTRACTION RULES:
- A job or role the user mentions becomes "headline"
- A company plus duration becomes a "newExperience" entry
- Listed technologies or tools become "newSkills" entries
- Education becomes a "newEducation" entry
- A city or country for the job search goes into "personalInfo.location"

RESPOND WITH JSON:
{{
  "response": "your conversational response in the user's language",
  "extractedData": {{
    "headline": "extracted job title if mentioned",
    "personalInfo": {{"location": "if mentioned"}},
    "newExperience": [{{"company": "...", "title": "...", "description": "...", "current": false, "achievements": []}}],
    "newSkills": [{{"name": "...", "level": "INTERMEDIATE"}}],
    "newEducation": [{{"institution": "...", "degree": "...", "fieldOfStudy": "...", "current": false}}],
    "summary": "if the user provides one or you generate one"
  }},
  "readyToSave": false,
  "suggestedQuestions": ["optional follow-up questions"]
}}

extractedData is null when nothing new was learned.
Set readyToSave=true once the CV has a headline plus at least one experience, or three or more skills."""


@dataclass(frozen=True)
class CvCopy:
    """Localized CV builder replies used when the model cannot answer."""

    fallback: str
    acknowledged: str


CV_COPY: dict[str, CvCopy] = {
    "en": CvCopy(
        fallback=(
            "Got it! Tell me more about yourself. Where have you worked, "
            "and what kind of projects have you done?"
        ),
        acknowledged="Got it, let's continue.",
    ),
    "tr": CvCopy(
        fallback=(
            "Anlıyorum! Bana biraz daha kendinden bahset. Hangi şirketlerde çalıştın, "
            "ne tür projeler yaptın?"
        ),
        acknowledged="Anlıyorum, devam edelim.",
    ),
}


def cv_copy(locale: str) -> CvCopy:
    return CV_COPY.get(locale, CV_COPY[DEFAULT_LOCALE])


def build_image_analysis_prompt(locale: str) -> str:
    """System instructions for detecting the needed service from a photo."""
    keys = "|".join(SERVICE_KEYWORDS)
    if locale == "tr":
        return f"""Sen bir ev hizmetleri uzmanısın. Gönderilen fotoğrafı analiz et ve:
1. Hangi hizmet gerekiyor (temizlik, tesisat, elektrik, boya, tamirat vb.)
2. Sorunun aciliyeti (low/medium/high/emergency)
3. Kısa bir açıklama
4. Yapılması gerekenler

JSON formatında yanıt ver:
{{
  "serviceType": "Türkçe hizmet adı",
  "serviceKey": "{keys}",
  "description": "Kısa açıklama",
  "urgency": "low|medium|high|emergency",
  "suggestions": ["öneri 1", "öneri 2"]
}}"""
    return f"""You are a home services expert. Analyze the photo and provide:
1. What service is needed (cleaning, plumbing, electrical, painting, repair, etc.)
2. Urgency level (low/medium/high/emergency)
3. Brief description
4. Recommendations

Respond in JSON format:
{{
  "serviceType": "Service name",
  "serviceKey": "{keys}",
  "description": "Brief description",
  "urgency": "low|medium|high|emergency",
  "suggestions": ["suggestion 1", "suggestion 2"]
}}"""


def image_analysis_fallback(locale: str) -> str:
    return "Görsel analiz edilemedi." if locale == "tr" else "Could not analyze image."
