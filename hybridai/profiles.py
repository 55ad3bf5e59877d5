from typing import Dict, List

from .schemas import ChatSettings, ModelProfile


DEFAULT_PROFILE_ID = "balanced"

MODEL_PROFILES: Dict[str, ModelProfile] = {
    "performant": ModelProfile(
        id="performant",
        model_identifier="qwen2.5-coder:14b-instruct-q4_K_M",
        label="Performant",
        description="Best quality, more precise generation",
        approximate_size_label="~8.5 GB",
        minimum_ram_hint="RAM >= 16 GB",
    ),
    "balanced": ModelProfile(
        id="balanced",
        model_identifier="qwen2.5-coder:7b-instruct-q4_K_M",
        label="Balanced",
        description="Good balance between quality and speed",
        approximate_size_label="~4.7 GB",
        minimum_ram_hint="RAM >= 8 GB (recommended)",
    ),
    "fast": ModelProfile(
        id="fast",
        model_identifier="qwen2.5-coder:3b-instruct-q4_K_M",
        label="Fast",
        description="Faster, uses fewer resources",
        approximate_size_label="~2.0 GB",
        minimum_ram_hint="RAM >= 4 GB",
    ),
}


def get_profile(profile_id: str) -> ModelProfile:
    try:
        return MODEL_PROFILES[profile_id]
    except KeyError:
        raise ValueError(f"Unknown model profile: {profile_id}") from None


def list_profiles() -> List[ModelProfile]:
    return list(MODEL_PROFILES.values())


def apply_profile(settings: ChatSettings, profile_id: str) -> ChatSettings:
    """Return settings pointing the local model at the profile's identifier."""
    profile = get_profile(profile_id)
    return settings.model_copy(
        update={"selected_profile": profile.id, "default_local_model": profile.model_identifier}
    )
