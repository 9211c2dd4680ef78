"""Run configuration for picatools conversions."""

from dataclasses import dataclass, field
from pathlib import Path

from .exceptions import ConfigurationError
from .idmapper import TEMPLATE_PATTERN
from .parser import ParserOptions, WhitespacePolicy
from .transform import DEFAULT_STYLESHEET

DEFAULT_BASE_URL = "http://localhost:8080/"


@dataclass
class ConversionConfig:
    """Configuration for one conversion run."""

    input_path: Path
    output_dir: Path
    id_mapper_path: Path
    id_template: str
    stylesheet: Path = DEFAULT_STYLESHEET
    status: str = "published"
    base_url: str = DEFAULT_BASE_URL
    subfield_whitespace: WhitespacePolicy = WhitespacePolicy.PRESERVE
    extra_parameters: dict[str, str] = field(default_factory=dict)

    def validate(self) -> None:
        """Check the configuration before any record is processed.

        Raises:
            ConfigurationError: If the id template has no trailing digits or the
                stylesheet does not exist
        """
        if not TEMPLATE_PATTERN.fullmatch(self.id_template):
            raise ConfigurationError(
                f"Invalid id template, expected a trailing digit run like 'prefix_0000': "
                f"{self.id_template!r}"
            )
        if not self.stylesheet.is_file():
            raise ConfigurationError(f"XSLT stylesheet not found: {self.stylesheet}")

    @property
    def parser_options(self) -> ParserOptions:
        return ParserOptions(subfield_whitespace=self.subfield_whitespace)

    @property
    def transform_parameters(self) -> dict[str, str]:
        """Static stylesheet parameters."""
        return {"WebApplicationBaseURL": self.base_url, **self.extra_parameters}
