import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, Iterable, List

ROOT_DIR = Path(__file__).resolve().parent.parent
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

import chronicle


DEFAULT_STATES = [
    "",
    "m:m_courtyard_first",
    "f:candle_lit",
    "f:courtyard_ghost_seen|m:m_courtyard_first",
]


def preview_scene(room: str, state: str, seed_token: str, config: chronicle.ServiceConfig) -> Dict[str, Any]:
    scene = chronicle.SceneRequest.from_params(room, state, seed_token, default_room=config.default_room)
    parsed = chronicle.parse_state(scene.state)
    key = chronicle.seed_key(scene.room, scene.state, scene.seed_token, config.landmark_rooms)
    return {
        "room": scene.room,
        "state": scene.state,
        "seed_token": scene.seed_token,
        "flags": sorted(parsed.flags),
        "milestones": sorted(parsed.milestones),
        "landmark_room": chronicle.find_landmark_room(scene.room, config.landmark_rooms) is not None,
        "seed_key": key,
        "seed": chronicle.seed_from_text(key),
        "prompt": chronicle.compose_prompt(scene.room, parsed, config.landmark_rooms),
    }


def preview_rooms(
    rooms: Iterable[str],
    states: Iterable[str],
    *,
    seed_token: str,
    config: chronicle.ServiceConfig,
) -> List[Dict[str, Any]]:
    state_list = list(states)
    return [preview_scene(room, state, seed_token, config) for room in rooms for state in state_list]


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Print the prompt and seed each room/state pair would send to the image model."
    )
    parser.add_argument(
        "--rooms",
        nargs="*",
        default=["courtyard"],
        help="Rooms to preview (default: courtyard).",
    )
    parser.add_argument(
        "--states",
        nargs="*",
        default=DEFAULT_STATES,
        help="Serialized state strings such as 'f:courtyard_ghost_seen|m:m_courtyard_first'.",
    )
    parser.add_argument(
        "--seed",
        default="",
        help="Seed token shared by every preview (default: the room name).",
    )
    parser.add_argument(
        "--settings",
        action="store_true",
        help="Apply settings.json (trigger overrides, default room) instead of the built-in defaults.",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    settings = chronicle.load_settings() if args.settings else chronicle.DEFAULT_SETTINGS
    config = chronicle.build_config(settings)
    results = preview_rooms(args.rooms, args.states, seed_token=args.seed, config=config)
    print(json.dumps(results, indent=2))


if __name__ == "__main__":
    main()
