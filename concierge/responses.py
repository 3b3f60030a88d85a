"""Localized response text: canned answers, fallbacks, error and escalation messages."""

from .classifier import QueryCategory
from .models import EscalationReason

DEFAULT_LANGUAGE = "en"

LANGUAGE_NAMES = {
    "en": "English",
    "am": "Amharic",
    "so": "Somali",
    "or": "Afaan Oromo",
    "ti": "Tigrinya",
    "aa": "Afar",
}


# ============================================================================
# Canned answers per classifier category (cancel has none)
# ============================================================================

CANNED_RESPONSES: dict[QueryCategory, dict[str, str]] = {
    QueryCategory.GREETING: {
        "en": "Hello! Welcome to eQabo.com 🏨 I'm here to help you find and book the perfect hotel in Ethiopia. How can I assist you today?",
        "am": "ሰላም! ወደ eQabo.com እንኳን በደህና መጡ 🏨 በኢትዮጵያ ውስጥ ፍጹም የሆነ ሆቴል እንዲያገኙ እና እንዲያስይዙ ለመርዳት እዚህ ነኝ። ዛሬ እንዴት ልረዳዎት እችላለሁ?",
        "so": "Salaan! Ku soo dhawoow eQabo.com 🏨 Waxaan halkan u joogaa si aan kaaga caawiyo inaad hesho oo aad buuxiso hotel fiican oo ku yaal Itoobiya. Sidee baan maanta kaaga caawin karaa?",
        "or": "Nagayu! Gara eQabo.com baga nagattan 🏨 Itoophiyaa keessatti mana keessummaa gaarii argachuu fi qabachuuf isin gargaaruuf asii jira. Har'a akkamiin isin gargaaruu danda'a?",
        "ti": "ሰላም! ናብ eQabo.com እንቋዕ ብደሓን መጻእኩም 🏨 ኣብ ኢትዮጵያ ዝበለጸ ሆቴል ክትረኽቡን ክትሕዙን ንምሕጋዝ ኣብዚ ኣለኹ። ሎሚ ብኸመይ ክሕግዘኩም እኽእል?",
    },
    QueryCategory.HELP: {
        "en": "I can help you with:\n🔍 Finding hotels in Ethiopian cities\n📅 Booking rooms\n💳 Payment options\n❓ General questions about travel\n\nWhat would you like to know?",
        "am": "እኔ በሚከተሉት ልረዳዎት እችላለሁ:\n🔍 በኢትዮጵያ ከተሞች ውስጥ ሆቴሎችን ማግኘት\n📅 ክፍሎችን ማስያዝ\n💳 የክፍያ አማራጮች\n❓ ስለ ጉዞ አጠቃላይ ጥያቄዎች\n\nምን ማወቅ ይፈልጋሉ?",
        "so": "Waxaan kaaga caawin karaa:\n🔍 Helitaanka hotelada magaalooyinka Itoobiya\n📅 Buuxinta qolal\n💳 Ikhtiyaarada lacag bixinta\n❓ Su'aalaha guud ee safarka\n\nMaxaad jeclaan lahayd inaad ogaato?",
        "or": "Ani kanaan isin gargaaruu nan danda'a:\n🔍 Magaaloota Itoophiyaa keessatti mana keessummaa argachuu\n📅 Kutaalee qabachuu\n💳 Filannoo kaffaltii\n❓ Waa'ee imala gaaffii waliigalaa\n\nMaal beekuu barbaaddu?",
        "ti": "ብዞም ክሕግዘኩም እኽእል:\n🔍 ኣብ ከተማታት ኢትዮጵያ ሆቴላት ምርካብ\n📅 ክፍልታት ምሕዛዝ\n💳 ናይ ክፍሊት ኣማራጺታት\n❓ ብዛዕባ ጉዕዞ ሓፈሻዊ ሕቶታት\n\nእንታይ ክትፈልጡ ትደልዩ?",
    },
    QueryCategory.BOOKING: {
        "en": "Great! I'd love to help you book a hotel. To get started, please use the main menu and select '🔍 Search Hotels' to browse available options in different Ethiopian cities.",
        "am": "በጣም ጥሩ! ሆቴል እንዲያስይዙ ልረዳዎት እወዳለሁ። ለመጀመር፣ እባክዎ ዋናውን ሜኑ ይጠቀሙ እና '🔍 ሆቴሎችን ይፈልጉ' ን ይምረጡ በተለያዩ የኢትዮጵያ ከተሞች ውስጥ ያሉ አማራጮችን ለማሰስ።",
        "so": "Fiican! Waxaan jeclaan lahaa inaan kaaga caawiyo buuxinta hotel. Si aad u bilowdo, fadlan isticmaal menu-ga ugu weyn oo dooro '🔍 Raadi Hotelladda' si aad u baadho ikhtiyaarada la heli karo magaalooyinka kala duwan ee Itoobiya.",
        "or": "Gaarii! Mana keessummaa akka qabattan isin gargaaruuf nan hawwa. Jalqabuuf, maaloo menu ijoo fayyadamaa fi '🔍 Mana keessummaa Barbaadi' filadhaatii magaaloota Itoophiyaa adda addaa keessatti filannoo jiran qorannaa.",
        "ti": "ብሉጽ! ሆቴል ክትሕዙ ክሕግዘኩም እፈቱ። ንምጅማር፣ በጃኹም ቀንዲ ሜኑ ተጠቐሙን '🔍 ሆቴላት ድለዩ' ምረጹን ኣብ ዝተፈላለዩ ከተማታት ኢትዮጵያ ዘለዉ ኣማራጺታት ንምድህሳስ።",
    },
    QueryCategory.PAYMENT: {
        "en": "💳 Payment Methods Available:\n\n🔹 TeleBirr - Mobile payment\n🔹 Chappa - Digital wallet\n🔹 eBirr - Electronic payment\n🔹 CBE Birr - Commercial Bank of Ethiopia\n\nAll payments are secure and processed instantly!",
        "am": "💳 የሚገኙ የክፍያ ዘዴዎች:\n\n🔹 ቴሌብር - የሞባይል ክፍያ\n🔹 ቻፓ - ዲጂታል ዋሌት\n🔹 ኢብር - ኤሌክትሮኒክ ክፍያ\n🔹 ሲቢኢ ብር - የኢትዮጵያ ንግድ ባንክ\n\nሁሉም ክፍያዎች ደህንነታቸው የተጠበቀ እና በፍጥነት ይሰራሉ!",
    },
    QueryCategory.LOCATION: {
        "en": "🌍 Popular Ethiopian Cities for Hotels:\n\n🏛️ Addis Ababa - Capital city\n🌊 Bahir Dar - Blue Nile source\n🏰 Gondar - Historical castles\n⛰️ Mekelle - Northern gateway\n🌸 Hawassa - Rift Valley lakes\n☕ Jimma - Coffee region\n🌆 Adama - Industrial hub\n🏜️ Dire Dawa - Eastern commerce\n\nWhich city interests you?",
        "am": "🌍 ለሆቴሎች ታዋቂ የኢትዮጵያ ከተሞች:\n\n🏛️ አዲስ አበባ - ዋና ከተማ\n🌊 ባህር ዳር - የአባይ ምንጭ\n🏰 ጎንደር - ታሪካዊ ቤተ መንግስቶች\n⛰️ መቀሌ - የሰሜን መግቢያ\n🌸 ሐዋሳ - የሪፍት ቫሊ ሀይቆች\n☕ ጅማ - የቡና ክልል\n🌆 አዳማ - የኢንዱስትሪ ማዕከል\n🏜️ ድሬ ዳዋ - የምስራቅ ንግድ\n\nየትኛው ከተማ ይስብዎታል?",
    },
}

# One-word queries seeded into the cache at startup
PRELOAD_KEYWORDS: dict[QueryCategory, dict[str, list[str]]] = {
    QueryCategory.GREETING: {
        "en": ["hi", "hello", "hey", "good morning", "good afternoon", "good evening"],
        "am": ["ሰላም"],
        "so": ["salaan", "salam"],
        "or": ["nagayu", "akkam"],
    },
    QueryCategory.PAYMENT: {
        "en": ["payment", "pay", "telebirr", "chappa", "ebirr", "cbe"],
        "am": ["ክፍያ", "ቴሌብር"],
    },
    QueryCategory.HELP: {
        "en": ["help", "support"],
        "am": ["እርዳታ", "ድጋፍ"],
    },
    QueryCategory.BOOKING: {
        "en": ["book", "booking", "reserve", "reservation", "hotel", "room"],
        "am": ["ሆቴል", "ክፍል"],
    },
    QueryCategory.LOCATION: {
        "en": ["addis", "bahir dar", "dire dawa", "gondar", "mekelle", "hawassa", "jimma", "adama"],
        "am": ["አዲስ", "ባህር ዳር", "ጎንደር"],
    },
}


# ============================================================================
# Fallback and error messages
# ============================================================================

FINAL_FALLBACK = {
    "en": "I'm here to help with hotel bookings in Ethiopia! Please use the menu options or ask me about hotels, cities, or booking assistance.",
    "am": "በኢትዮጵያ ውስጥ ሆቴል ማስያዝ ለመርዳት እዚህ ነኝ! እባክዎ የሜኑ አማራጮችን ይጠቀሙ ወይም ስለ ሆቴሎች፣ ከተሞች ወይም የማስያዝ እርዳታ ይጠይቁኝ።",
    "so": "Waxaan halkan u joogaa si aan kaaga caawiyo buuxinta hotelada Itoobiya! Fadlan isticmaal ikhtiyaarada menu-ga ama i weydii wax ku saabsan hotelada, magaalooyinka, ama caawinta buuxinta.",
    "or": "Itoophiyaa keessatti mana keessummaa qabachuuf gargaaruuf asii jira! Maaloo filannoo menu fayyadamaa ykn waa'ee mana keessummaa, magaaloota, ykn gargaarsa qabachuu na gaafadhaa.",
    "ti": "ኣብ ኢትዮጵያ ሆቴል ንምሕዛዝ ንምሕጋዝ ኣብዚ ኣለኹ! በጃኹም ናይ ሜኑ ኣማራጺታት ተጠቐሙ ወይ ብዛዕባ ሆቴላት፣ ከተማታት፣ ወይ ናይ ምሕዛዝ ሓገዝ ሕተቱኒ።",
}

ERROR_MESSAGES = {
    "en": "I'm sorry, I'm experiencing technical difficulties. Please try again in a moment.",
    "am": "ይቅርታ፣ ቴክኒካዊ ችግር እያጋጠመኝ ነው። እባክዎ ትንሽ ቆይተው እንደገና ይሞክሩ።",
    "so": "Waan ka xumahay, waxaan la kulmayaa dhibaatooyin farsameed. Fadlan dib u isku day daqiiqad gudaheeda.",
    "or": "Dhiifama, rakkoo teeknikaa mudachaa jira. Maaloo yeroo muraasaan booda yaali.",
    "ti": "ይቅሬታ፣ ቴክኒካዊ ጸገም ኣጋጢሙኒ ኣሎ። በጃኹም ቁሩብ ድሕሪ ዝሓለፈ እንደገና ፈትኑ።",
}

ESCALATION_MESSAGES: dict[EscalationReason, dict[str, str]] = {
    EscalationReason.CONSECUTIVE_FAILURES: {
        "en": "I understand you're having difficulty. Let me connect you with a human agent who can better assist you. Please wait a moment while I transfer your conversation.",
    },
    EscalationReason.HUMAN_REQUEST: {
        "en": "Of course! I'll connect you with a human agent right away. Please hold on while I transfer you to someone who can help.",
    },
    EscalationReason.COMPLEX_QUERY: {
        "en": "Your request requires specialized assistance. I'm connecting you with a human agent who has the expertise to help you properly.",
    },
    EscalationReason.BOOKING_MODIFICATION: {
        "en": "For booking modifications, I'll connect you with our booking specialists who can handle your request securely and efficiently.",
    },
    EscalationReason.COMPLAINT: {
        "en": "I understand your concerns and want to ensure they're addressed properly. Let me connect you with a supervisor who can help resolve this issue.",
    },
    EscalationReason.TECHNICAL_ERROR: {
        "en": "I'm experiencing some technical difficulties. Let me connect you with a human agent to ensure you receive the assistance you need.",
    },
    EscalationReason.MANUAL_ESCALATION: {
        "en": "I see you have an ongoing case with our team. Let me reconnect you with the appropriate agent.",
    },
}

GENERIC_ESCALATION_MESSAGE = "I'm connecting you with a human agent who can better assist you. Please wait a moment."


def _localized(messages: dict[str, str], language: str, default_language: str = DEFAULT_LANGUAGE) -> str | None:
    return messages.get(language) or messages.get(default_language)


def canned_response(
    category: QueryCategory | None,
    language: str,
    default_language: str = DEFAULT_LANGUAGE,
) -> str | None:
    """Canned answer for ``category`` in ``language``, falling back to the default language."""
    if category is None or category not in CANNED_RESPONSES:
        return None
    return _localized(CANNED_RESPONSES[category], language, default_language)


def final_fallback(language: str, degraded: bool = False) -> str:
    """Static last-resort answer. ``degraded`` selects the "difficulties" text."""
    return error_message(language) if degraded else _localized(FINAL_FALLBACK, language)


def error_message(language: str) -> str:
    return _localized(ERROR_MESSAGES, language)


def escalation_message(reason: EscalationReason | None, language: str = DEFAULT_LANGUAGE) -> str:
    messages = ESCALATION_MESSAGES.get(reason) if reason else None
    if not messages:
        return GENERIC_ESCALATION_MESSAGE
    return _localized(messages, language) or GENERIC_ESCALATION_MESSAGE


def preload_items(max_per_language: int | None = None) -> list[tuple[str, str, str, str]]:
    """(query, language, response, category) tuples for ``ResponseCache.preload``."""
    items = []
    for category, by_language in PRELOAD_KEYWORDS.items():
        for language, keywords in by_language.items():
            response = canned_response(category, language)
            for keyword in keywords[:max_per_language]:
                items.append((keyword, language, response, category.value))
    return items


# ============================================================================
# System prompt for the generative stage
# ============================================================================

_CATEGORY_PROMPTS = {
    QueryCategory.BOOKING: " Focus on hotel booking assistance and guide users to use the menu options.",
    QueryCategory.PAYMENT: " Provide information about Ethiopian payment methods: Telebirr, Chappa, eBirr, and CBE Birr.",
    QueryCategory.LOCATION: " Provide information about Ethiopian cities and travel destinations.",
    QueryCategory.HELP: " Provide helpful guidance about using the bot and booking hotels.",
}


def build_system_prompt(language: str, category: QueryCategory | None = None) -> str:
    language_name = LANGUAGE_NAMES.get(language, LANGUAGE_NAMES[DEFAULT_LANGUAGE])
    base = (
        "You are eQabo.com's hotel booking assistant for Ethiopia. "
        f"Respond in {language_name}. Keep responses concise and helpful."
    )
    return base + _CATEGORY_PROMPTS.get(category, " Focus on hotel booking and Ethiopian travel.")
