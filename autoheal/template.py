from importlib import resources
from typing import Any, Callable, MutableMapping

from jinja2 import BaseLoader, ChoiceLoader, Environment, PackageLoader, PrefixLoader, Template


def _available_languages(package_name: str) -> list[str]:
    """List the language directories shipped under ``templates/``."""
    root = resources.files(package_name).joinpath("templates")
    if not root.is_dir():
        return []
    return sorted(entry.name for entry in root.iterdir() if entry.is_dir())


class TemplateLoader(BaseLoader):
    """Prefix loader keyed by language code, one package directory per language."""

    def __init__(self, package_name: str, default_lang: str = 'en'):
        self.default_lang = default_lang
        self.loader_map: dict[str, list[BaseLoader]] = {
            lang: [PackageLoader(package_name, package_path=f"templates/{lang}")]
            for lang in _available_languages(package_name)
        }
        self._loader = self._build_jinja_loader(self.loader_map)

    @staticmethod
    def _build_jinja_loader(loader_map: dict[str, list[BaseLoader]]):
        choice_loaders = dict((key, ChoiceLoader(loaders)) for (key, loaders) in loader_map.items())
        return PrefixLoader(choice_loaders)

    def get_source(self, environment: "Environment", template: str) -> tuple[str, str | None, Callable[[], bool] | None]:
        return self._loader.get_source(environment, template)

    def list_templates(self) -> list[str]:
        return self._loader.list_templates()

    def add_loaders(self, lang: str, *loaders: BaseLoader):
        """Put *loaders* in front of the existing ones for *lang*."""
        self.loader_map[lang] = list(loaders) + self.loader_map.get(lang, [])
        self._loader = self._build_jinja_loader(self.loader_map)


class TemplateEnvironment(Environment):
    def __init__(self, package_name: str, default_lang: str | None = None, **kwargs: Any):
        self.loader = TemplateLoader(package_name, default_lang or 'en')
        kwargs.setdefault('trim_blocks', True)
        kwargs.setdefault('lstrip_blocks', True)
        super().__init__(loader=self.loader, **kwargs)

    def add_loaders(self, lang: str, *loaders: BaseLoader):
        self.loader.add_loaders(lang, *loaders)

    def load_template(self, name: str, lang: str | None = None,
                      globals: MutableMapping[str, Any] | None = None) -> Template:
        default_lang = self.loader.default_lang

        # Requested language first, then the default, then English
        candidate_langs: list[str] = []
        for l in (lang, default_lang, 'en'):
            if l and l not in candidate_langs:
                candidate_langs.append(l)
        for l in self.loader.loader_map:
            if l not in candidate_langs:
                candidate_langs.append(l)

        template_names = [f"{l}/{name}" for l in candidate_langs]
        return self.select_template(names=template_names, globals=globals)
