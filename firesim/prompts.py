"""
Prompt templates and prompt generation for fire scenario images.

Turns a GenerationRequest into one natural-language prompt per requested
viewpoint. Every prompt shares the same scene, fire and weather text so the
images describe the same fire; only the perspective section differs.
"""
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List

from .schemas import GenerationRequest, GeoContext, utcnow


class PromptSafetyError(ValueError):
    """Raised when a composed prompt contains a blocked term."""


INTENSITY_VISUALS: Dict[str, Dict[str, str]] = {
    "low": {
        "flame_height": "0.5 to 1.5 metres",
        "smoke": "light grey smoke drifting upward",
        "descriptor": "Low intensity surface fire",
    },
    "moderate": {
        "flame_height": "1.5 to 3 metres",
        "smoke": "grey-white smoke columns rising steadily",
        "descriptor": "Moderate intensity with occasional tree torching",
    },
    "high": {
        "flame_height": "3 to 10 metres",
        "smoke": "dense grey-black smoke columns",
        "descriptor": "High intensity with intermittent crown fire",
    },
    "veryHigh": {
        "flame_height": "10 to 20 metres",
        "smoke": "massive dark smoke columns forming pyrocumulus cloud",
        "descriptor": "Very high intensity with active crown fire",
    },
    "extreme": {
        "flame_height": "20+ metres",
        "smoke": "towering pyrocumulonimbus cloud with dense ember rain",
        "descriptor": "Extreme intensity, full crown fire with ember attack",
    },
    "catastrophic": {
        "flame_height": "30+ metres",
        "smoke": "massive pyrocumulonimbus system with severe turbulence and ember storms",
        "descriptor": "Catastrophic intensity with total canopy consumption",
    },
}

TIME_OF_DAY_LIGHTING: Dict[str, str] = {
    "dawn": "Soft golden light from the east at dawn, long shadows across the landscape",
    "morning": "Bright morning sun from the east, clear visibility, crisp natural lighting",
    "midday": "Harsh overhead sun at midday, short shadows, washed-out pale sky above the smoke",
    "afternoon": "Warm afternoon light from the west, golden-orange tones, lengthening shadows",
    "dusk": "Deep orange and red sunset sky at dusk, fire glow visible against fading light",
    "night": "Dark night scene lit primarily by the fire itself, intense orange glow reflecting off smoke",
}

VIEWPOINT_PERSPECTIVES: Dict[str, str] = {
    "aerial": "Aerial photograph taken from a helicopter or drone at 300 metres altitude, looking straight down at the fire",
    "helicopter_north": "Elevated wide-angle photograph from a helicopter north of the fire at 150 metres altitude, looking south at the fire front from an oblique angle",
    "helicopter_south": "Elevated wide-angle photograph from a helicopter south of the fire at 150 metres altitude, looking north across the burned area and active fire",
    "helicopter_east": "Elevated wide-angle photograph from a helicopter east of the fire at 150 metres altitude, looking west at the flank of the fire",
    "helicopter_west": "Elevated wide-angle photograph from a helicopter west of the fire at 150 metres altitude, looking east at the flank of the fire",
    "helicopter_above": "Elevated aerial photograph from directly above the fire at 200 metres altitude, capturing the full fire perimeter and smoke plume",
    "ground_north": "Ground-level photograph taken from the north side of the fire, approximately 500 metres away, looking south towards the flame front at eye level",
    "ground_south": "Ground-level photograph taken from the south side looking north, showing the burned area with fire visible in the distance",
    "ground_east": "Ground-level photograph taken from the east looking west towards the fire, capturing the flank of the fire at eye level",
    "ground_west": "Ground-level photograph taken from the west looking east towards the fire, capturing the flank of the fire at eye level",
    "ground_above": "Ground-level photograph from slightly elevated terrain looking across the fire area, showing the full fire perimeter and smoke column",
    "ridge": "Wide-angle photograph from a ridgeline about 300 metres above the fire area, capturing the broader landscape context",
}

FIRE_STAGE_DESCRIPTIONS: Dict[str, str] = {
    "spotFire": "spot fire",
    "developing": "developing bushfire",
    "established": "established bushfire",
    "major": "major bushfire campaign fire",
}

VEGETATION_DESCRIPTORS: Dict[str, str] = {
    "Dry Sclerophyll Forest": "dry eucalyptus forest with sparse understorey and leaf litter",
    "Wet Sclerophyll Forest": "tall wet eucalyptus forest with dense fern understorey",
    "Grassland": "open grassland with cured dry grass",
    "Heath": "low dense coastal heath and scrubland",
    "Rainforest": "subtropical rainforest with dense canopy",
    "Grassy Woodland": "open woodland with scattered eucalypts over native grasses",
    "Cumberland Plain Woodland": "dry woodland on shale with sparse canopy and grassy groundlayer",
    "Riverine Forest": "eucalypt forest along waterways with moist understorey",
    "Swamp Sclerophyll Forest": "wet sclerophyll forest on poorly drained soils with paperbark and swamp mahogany",
    "Coastal Sand Heath": "wind-shaped coastal heath on sandy ridges with banksia and tea-tree",
    "Alpine Complex": "alpine heath and grass mosaic with stunted shrubs and herbfields",
    "Plantation Forest": "structured plantation rows with dense fuel between tree lines",
    "Cleared/Urban": "cleared land or urban area with minimal vegetation and structures",
}

NEARBY_FEATURES: Dict[str, str] = {
    "road": "A road runs nearby",
    "escarpment": "A steep escarpment lies to one side",
    "river": "A river valley is visible in the landscape",
    "residential_area": "Residential areas are visible in the distance",
    "rural_residential": "Rural properties are scattered through the area",
}

OPPOSITE_DIRECTION: Dict[str, str] = {
    "N": "south",
    "NE": "southwest",
    "E": "west",
    "SE": "northwest",
    "S": "north",
    "SW": "northeast",
    "W": "east",
    "NW": "southeast",
}

# Terms that trip model content filters; checked against the scenario-derived text
BLOCKED_TERMS = (
    "explosion",
    "destruction",
    "casualties",
    "violence",
    "death",
    "people",
    "human",
    "person",
    "animal",
    "wildlife",
    "injury",
    "victim",
    "destroy",
    "devastation",
)


@dataclass
class PromptTemplate:
    id: str
    version: str
    style: str
    scene: Callable[[Dict[str, object]], str]
    fire: Callable[[Dict[str, object]], str]
    weather: Callable[[Dict[str, object]], str]
    perspective: Callable[[str], str]
    safety: str


DEFAULT_PROMPT_TEMPLATE = PromptTemplate(
    id="bushfire-photorealistic-v1",
    version="1.0.0",
    style="A photorealistic photograph of an Australian bushfire. DSLR quality, natural lighting.",
    scene=lambda d: (
        f"{d['vegetation']} on {d['terrain']} in New South Wales, Australia. "
        f"Elevation approximately {d['elevation']:.0f} metres. {d['nearby_features']}"
    ),
    fire=lambda d: (
        f"A {d['fire_stage']} burning through the vegetation. {d['descriptor']}. "
        f"Flames are {d['flame_height']} high with {d['smoke']}. "
        f"The head fire is spreading {d['spread_direction']} driven by {d['wind_description']}."
    ),
    weather=lambda d: (
        f"Temperature is {d['temperature']:g}°C with {d['humidity']:g}% relative humidity. "
        f"{d['wind_speed']:g} km/h {d['wind_direction']} wind. {d['lighting']}."
    ),
    perspective=lambda viewpoint: f"{VIEWPOINT_PERSPECTIVES[viewpoint]}.",
    safety="No people, no animals, no text, no watermarks. No fantasy elements.",
)


@dataclass
class GeneratedPrompt:
    viewpoint: str
    prompt_text: str
    prompt_set_id: str
    template_version: str


@dataclass
class PromptSet:
    id: str
    template_version: str
    prompts: List[GeneratedPrompt] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)

    def by_viewpoint(self) -> Dict[str, str]:
        return {p.viewpoint: p.prompt_text for p in self.prompts}


def describe_terrain(geo: GeoContext) -> str:
    slope = geo.slope.mean
    if slope < 5:
        return "flat terrain"
    if slope < 15:
        return "gently sloping terrain"
    if slope < 25:
        return "moderate slopes"
    if slope < 35:
        return "steep slopes"
    return "very steep escarpment"


def describe_nearby_features(geo: GeoContext) -> str:
    descriptions = [NEARBY_FEATURES.get(f, f) for f in geo.nearby_features if f]
    if not descriptions:
        return "Remote bushland area."
    return ". ".join(descriptions) + "."


def describe_wind(wind_speed: float, wind_direction: str) -> str:
    if wind_speed < 10:
        strength = "light"
    elif wind_speed < 30:
        strength = "moderate"
    elif wind_speed < 50:
        strength = "strong"
    elif wind_speed < 70:
        strength = "very strong"
    else:
        strength = "extreme"
    return f"{strength} {wind_direction.lower()} winds"


def _prompt_data(request: GenerationRequest) -> Dict[str, object]:
    inputs, geo = request.inputs, request.geo_context
    visuals = INTENSITY_VISUALS[inputs.intensity]
    return {
        "vegetation": VEGETATION_DESCRIPTORS.get(geo.vegetation_type, geo.vegetation_type.lower()),
        "terrain": describe_terrain(geo),
        "elevation": geo.elevation.mean,
        "nearby_features": describe_nearby_features(geo),
        "fire_stage": FIRE_STAGE_DESCRIPTIONS[inputs.fire_stage],
        "descriptor": visuals["descriptor"],
        "flame_height": visuals["flame_height"],
        "smoke": visuals["smoke"],
        "spread_direction": f"to the {OPPOSITE_DIRECTION.get(inputs.wind_direction, 'leeward direction')}",
        "wind_description": describe_wind(inputs.wind_speed, inputs.wind_direction),
        "temperature": inputs.temperature,
        "humidity": inputs.humidity,
        "wind_speed": inputs.wind_speed,
        "wind_direction": inputs.wind_direction,
        "lighting": TIME_OF_DAY_LIGHTING[inputs.time_of_day],
    }


def find_blocked_terms(text: str) -> List[str]:
    lowered = text.lower()
    return [term for term in BLOCKED_TERMS if term in lowered]


def _collapse(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


def compose_prompt(template: PromptTemplate, data: Dict[str, object], viewpoint: str) -> str:
    body = " ".join([
        template.style,
        template.scene(data),
        template.fire(data),
        template.weather(data),
        template.perspective(viewpoint),
    ])
    # The fixed safety suffix names the very terms it forbids, so only the body is screened
    blocked = find_blocked_terms(body)
    if blocked:
        raise PromptSafetyError(
            f"Prompt contains blocked terms: {', '.join(blocked)}. "
            "This indicates a problem with the prompt template or input data."
        )
    return _collapse(f"{body} {template.safety}")


def build_prompts(
    request: GenerationRequest,
    template: PromptTemplate = DEFAULT_PROMPT_TEMPLATE,
) -> PromptSet:
    """
    Build one prompt per requested viewpoint, duplicates included.

    Raises:
        PromptSafetyError: A composed prompt contains a blocked term
    """
    prompt_set_id = str(uuid.uuid4())
    data = _prompt_data(request)
    prompts = [
        GeneratedPrompt(
            viewpoint=viewpoint,
            prompt_text=compose_prompt(template, data, viewpoint),
            prompt_set_id=prompt_set_id,
            template_version=template.version,
        )
        for viewpoint in request.requested_views
    ]
    return PromptSet(id=prompt_set_id, template_version=template.version, prompts=prompts)
