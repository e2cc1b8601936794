from __future__ import annotations

from automode.features import Feature
from automode.profiles import AgentProfile
from automode.prompts import build_continuation_prompt, build_feature_prompt, commit_message


def test_feature_prompt_includes_profile_sections() -> None:
    profile = AgentProfile(id="p", guidelines=["small commits"], constraints=["no network"])
    feature = Feature(id="f1", title="Search", description="Add search box", imagePaths=["/tmp/mock.png"])

    prompt = build_feature_prompt(profile, feature)

    assert prompt.startswith("Implement feature f1: Search")
    assert "Add search box" in prompt
    assert "- /tmp/mock.png" in prompt
    assert "Guidelines:\n- small commits" in prompt
    assert "Constraints:\n- no network" in prompt


def test_feature_prompt_without_description() -> None:
    prompt = build_feature_prompt(AgentProfile(id="p"), Feature(id="f2"))
    assert "(no description provided)" in prompt
    assert "Guidelines" not in prompt


def test_continuation_prompt_lists_images() -> None:
    blocks = build_continuation_prompt("  try again  ", ["a.png", "b.png"])

    assert blocks[0].text == "try again"
    assert "- a.png\n- b.png" in blocks[1].text
    assert len(build_continuation_prompt("plain")) == 1


def test_commit_message_falls_back_to_description_and_id() -> None:
    assert commit_message(Feature(id="f1", title="Dark mode"), "f1") == "feat: Dark mode\n\nFeature-Id: f1"
    assert commit_message(Feature(id="f1", description="Fix crash\nDetails"), "f1").startswith("feat: Fix crash\n")
    assert commit_message(None, "f9") == "feat: implement feature f9\n\nFeature-Id: f9"
    assert commit_message(Feature(id="f3"), "f3").startswith("feat: implement feature f3")
