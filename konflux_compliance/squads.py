from pathlib import Path
from typing import Dict, Iterable, List, Union

import yaml

from konflux_compliance.exceptions import InvalidSquadError


class SquadConfig:
    """Component ownership as declared in component-squad.yaml:

        squads:
          <key>:
            name: <display name>
            components:
              - <component name or name fragment>
    """

    def __init__(self, squads: Dict[str, Dict]):
        self.squads = squads

    @classmethod
    def load(cls, path: Union[str, Path]) -> "SquadConfig":
        path = Path(path)
        if not path.is_file():
            raise FileNotFoundError(f"Squad configuration file not found: {path}")
        with path.open() as f:
            data = yaml.safe_load(f) or {}
        return cls(data.get("squads") or {})

    def available(self) -> List[str]:
        return [f"{key} ({(squad or {}).get('name', key)})" for key, squad in self.squads.items()]

    def get_squad_components(self, key: str) -> List[str]:
        squad = self.squads.get(key) or {}
        components = [str(c) for c in squad.get("components") or [] if c]
        if not components:
            raise InvalidSquadError(
                f"Invalid squad name '{key}'. Available squads:\n  " + "\n  ".join(self.available())
            )
        return components


def filter_components(components: Iterable[str], squad_components: Iterable[str]) -> List[str]:
    """Keep the components whose name contains any of the squad's entries."""
    squad_components = list(squad_components)
    return [c for c in components if any(entry in c for entry in squad_components)]
