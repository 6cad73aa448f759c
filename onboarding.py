"""Read a traveler's taste from the onboarding choices.

Three picks from a curated image grid, one cultural anchor, a dream trip and
one thing they never want.  A single LLM call turns that into 4-6 short
"mirror phrases" plus a taste profile; the mood tags of the chosen images
are merged into the profile before it is stored.
"""

import logging
from dataclasses import dataclass

from dataclasses_json import dataclass_json

from agents.llm import extract
from errors import FatalParseError, ParseError
from schemas import OnboardingOut

logger = logging.getLogger(__name__)


@dataclass_json
@dataclass
class OnboardingImage:
    id: str
    src: str
    alt: str
    mood: list[str]


_UNSPLASH = "https://images.unsplash.com/photo-{}?w=600&q=80"

ONBOARDING_IMAGES: list[OnboardingImage] = [
    OnboardingImage("narrow-venice", _UNSPLASH.format("1523906834658-6e24ef2386f9"),
                    "A narrow canal in Venice at dusk, reflections on still water",
                    ["narrow", "ancient", "communal", "warm-light", "exterior"]),
    OnboardingImage("open-iceland", _UNSPLASH.format("1476610182048-b716b8518aae"),
                    "A vast Icelandic landscape, lone road across a lava plain",
                    ["open", "solitary", "contemporary", "cool-light", "exterior"]),
    OnboardingImage("interior-library", _UNSPLASH.format("1507003211169-0a1dd7228f2d"),
                    "A hushed reading room inside a grand old library, warm lamplight",
                    ["interior", "ancient", "solitary", "warm-light", "narrow"]),
    OnboardingImage("communal-market", _UNSPLASH.format("1555396273-367ea4eb4db5"),
                    "A crowded covered market, stalls of produce, warm artificial light",
                    ["communal", "interior", "warm-light", "dense", "contemporary"]),
    OnboardingImage("coastal-cliff", _UNSPLASH.format("1533105079780-92b9be482077"),
                    "A coastal cliff path in southern Europe, blue sea below, stark light",
                    ["coastal", "open", "solitary", "warm-light", "exterior"]),
    OnboardingImage("urban-brutalist", _UNSPLASH.format("1486325212027-8081e485255e"),
                    "A brutalist concrete plaza, single shaft of morning light, no people",
                    ["urban", "contemporary", "solitary", "cool-light", "exterior", "open"]),
    OnboardingImage("narrow-souk", _UNSPLASH.format("1539020140153-e479b8831a2b"),
                    "A narrow souk passage in Morocco, shafts of light, vivid colour",
                    ["narrow", "ancient", "communal", "warm-light", "interior"]),
    OnboardingImage("open-japan", _UNSPLASH.format("1528360983277-13d401cdc186"),
                    "A Japanese garden at dawn, raked gravel, mist, stillness",
                    ["open", "ancient", "solitary", "cool-light", "exterior"]),
    OnboardingImage("interior-cafe", _UNSPLASH.format("1445116572660-236099ec97a0"),
                    "A small café corner in Paris, marble table, window light, espresso cup",
                    ["interior", "communal", "warm-light", "contemporary", "narrow"]),
    OnboardingImage("urban-night", _UNSPLASH.format("1477959858617-67f85cf4f1df"),
                    "A city at night from above, grid of lights, dense and vast",
                    ["urban", "open", "communal", "contemporary", "exterior"]),
    OnboardingImage("ancient-ruins", _UNSPLASH.format("1552832230-c0197dd311b5"),
                    "Ancient Roman ruins at dusk, amber stone, long shadows, no tourists",
                    ["ancient", "open", "solitary", "warm-light", "exterior"]),
    OnboardingImage("coastal-fishing", _UNSPLASH.format("1507525428034-b723cf961d3e"),
                    "A quiet fishing village, pastel buildings reflected in harbour water",
                    ["coastal", "communal", "warm-light", "exterior", "contemporary"]),
]

_IMAGES_BY_ID = {img.id: img for img in ONBOARDING_IMAGES}


def resolve_images(image_ids: list[str]) -> list[OnboardingImage]:
    """Known images in selection order; unknown ids are ignored."""
    return [_IMAGES_BY_ID[i] for i in image_ids if i in _IMAGES_BY_ID]


def onboarding_prompt(images: list[OnboardingImage], anchor_text: str,
                      bucket_list_trip: str, hard_constraint: str) -> str:
    mood_context = "\n".join(
        f'Image {i + 1} "{img.id}": moods [{", ".join(img.mood)}] ({img.alt})'
        for i, img in enumerate(images)
    ) or "(no images chosen)"

    return f"""You are a travel concierge. You've just learned something deep about a
traveler through their choices. Your job is two things:

1. Extract their taste profile as structured data
2. Write 4-6 short, poetic mirror phrases: things that are TRUE about this
   person when they travel, revealed by their choices

THE TRAVELER CHOSE THESE IMAGES:
{mood_context}

THEIR CULTURAL ANCHOR:
"{anchor_text}"

THEIR DREAM TRIP (bucket list):
"{bucket_list_trip}"

THEIR HARD CONSTRAINT (what they never want):
"{hard_constraint}"

MIRROR PHRASES: each one short (max 8 words), declarative, specific enough to
feel true, about their travel *mode* rather than destinations, in second person.
Examples: "You want somewhere that hasn't been optimized." "Mornings matter
more than nights." "The counter, not the table."

TASTE PROFILE dimensions from all evidence (0.0 to 1.0):
- formality: 0.0 (underground/raw) to 1.0 (refined/formal)
- density: 0.0 (sparse/empty) to 1.0 (layered/crowded)
- temporality: 0.0 (ancient) to 1.0 (contemporary)
- sociality: 0.0 (solitary) to 1.0 (communal)
- legibility: 0.0 (hidden/obscure) to 1.0 (famous/obvious)
- pace: "slow_deep" | "varied" | "high_coverage"
- discovery_mode: "wander" | "researched" | "local_led"
- taste_summary: 2-3 sentence narrative of who this traveler is. Don't mention destinations.

Respond ONLY with valid JSON:
{{
  "taste_phrases": ["phrase 1", "phrase 2", "phrase 3", "phrase 4"],
  "taste_profile": {{
    "anchors": {{"cultural": "...", "bucket_list": "...", "anti_pattern": "..."}},
    "dimensions": {{"formality": 0.0, "density": 0.0, "temporality": 0.0,
                    "sociality": 0.0, "legibility": 0.0}},
    "pace": "slow_deep",
    "discovery_mode": "wander",
    "hard_constraints": [],
    "taste_summary": ""
  }}
}}"""


async def run_onboarding(llm, image_selections: list[str], anchor_text: str = "",
                         bucket_list_trip: str = "", hard_constraint: str = "") -> OnboardingOut:
    images = resolve_images(image_selections)
    result = await extract(
        llm,
        onboarding_prompt(images, anchor_text, bucket_list_trip, hard_constraint),
        OnboardingOut,
        max_tokens=1200,
    )
    if isinstance(result, ParseError):
        logger.warning("Onboarding profile failed (%s): %s", result.kind, result.reason)
        raise FatalParseError("taste profile", result)

    profile = result.taste_profile
    profile.selected_image_moods = [mood for img in images for mood in img.mood]
    anchors = {"cultural": anchor_text, "bucket_list": bucket_list_trip,
               "anti_pattern": hard_constraint}
    profile.anchors = {**anchors, **{k: v for k, v in profile.anchors.items() if v}}
    if hard_constraint and hard_constraint not in profile.hard_constraints:
        profile.hard_constraints.append(hard_constraint)
    return result
