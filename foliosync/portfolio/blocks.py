"""
blocks.py: Block content schemas and the Block tagged union.

Defines:
  - CamelModel            (shared base: camelCase JSON, extra='forbid')
  - *Content models       (one schema per block type)
  - *Block variants       (type Literal + typed content)
  - Block                 (discriminated union keyed by `type`)
  - build_block / merge_block  (the only ways the aggregate creates or changes a block)

Block `type` is immutable: merge_block revalidates the merged content against
the schema of the block's existing type, never a new one.
"""
from __future__ import annotations

import uuid
from datetime import date
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from foliosync.errors import ValidationError


class CamelModel(BaseModel):
    """Base for every document model: snake_case in Python, camelCase on the wire."""
    model_config = ConfigDict(
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
    )


# ---------------------------------------------------------------------------
# Shared content fragments
# ---------------------------------------------------------------------------

class SocialLinks(CamelModel):
    github: str = ""
    linkedin: str = ""
    twitter: str = ""
    website: str = ""
    email: str = ""


class ProjectLinks(CamelModel):
    github: str = ""
    live: str = ""
    demo: str = ""


class ProjectStats(CamelModel):
    stars: int = Field(default=0, ge=0)
    forks: int = Field(default=0, ge=0)
    language: str = ""


# ---------------------------------------------------------------------------
# Content schemas: one per block type
# ---------------------------------------------------------------------------

class BioContent(CamelModel):
    title: str = Field(default="", max_length=100)
    description: str = Field(default="", max_length=1000)
    avatar: str = ""
    skills: List[Annotated[str, Field(max_length=50)]] = []
    social_links: SocialLinks = SocialLinks()


class ProjectItem(CamelModel):
    title: str = Field(..., min_length=1, max_length=100)
    description: str = Field(default="", max_length=500)
    image: str = ""
    technologies: List[Annotated[str, Field(max_length=30)]] = []
    links: ProjectLinks = ProjectLinks()
    featured: bool = False
    stats: ProjectStats = ProjectStats()


class ProjectsContent(CamelModel):
    title: str = Field(default="Projects", max_length=100)
    projects: List[ProjectItem] = []


class Skill(CamelModel):
    name: str = Field(..., min_length=1, max_length=50)
    level: Literal["beginner", "intermediate", "advanced", "expert"] = "intermediate"
    icon: str = ""
    color: str = "#3b82f6"


class SkillCategory(CamelModel):
    name: str = Field(..., min_length=1, max_length=50)
    skills: List[Skill] = []


class SkillsContent(CamelModel):
    categories: List[SkillCategory] = []


class BlogPost(CamelModel):
    title: str = Field(..., min_length=1, max_length=100)
    excerpt: str = Field(default="", max_length=300)
    url: str = Field(..., min_length=1)
    published_at: date
    tags: List[Annotated[str, Field(max_length=30)]] = []
    read_time: int = Field(default=5, ge=0)
    featured: bool = False


class BlogContent(CamelModel):
    posts: List[BlogPost] = []
    rss_url: str = ""
    platform: Literal["medium", "dev.to", "hashnode", "custom"] = "custom"


class Testimonial(CamelModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    name: str = Field(..., min_length=1, max_length=100)
    role: str = ""
    company: str = ""
    content: str = Field(default="", max_length=1000)
    rating: int = Field(default=5, ge=1, le=5)
    avatar: str = ""


class TestimonialsContent(CamelModel):
    testimonials: List[Testimonial] = []


class Availability(CamelModel):
    status: Literal["available", "busy", "unavailable"] = "available"
    message: str = Field(default="", max_length=200)


class ContactContent(CamelModel):
    title: str = Field(default="Get In Touch", max_length=100)
    description: str = Field(default="", max_length=500)
    email: str = ""
    phone: str = Field(default="", max_length=20)
    location: str = Field(default="", max_length=100)
    availability: Availability = Availability()
    social_links: SocialLinks = SocialLinks()


class ResumeFile(CamelModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    name: str = Field(..., min_length=1)
    url: str = Field(..., min_length=1)
    size: int = Field(default=0, ge=0)          # bytes
    upload_date: Optional[date] = None
    type: Literal["pdf", "doc", "docx"] = "pdf"
    is_default: bool = False


class ResumeContent(CamelModel):
    resumes: List[ResumeFile] = []


class ExperienceItem(CamelModel):
    title: str = Field(..., min_length=1, max_length=100)
    company: str = Field(..., min_length=1, max_length=100)
    location: str = Field(default="", max_length=100)
    start_date: date
    end_date: Optional[date] = None
    current: bool = False
    description: str = Field(default="", max_length=1000)
    technologies: List[Annotated[str, Field(max_length=30)]] = []
    achievements: List[Annotated[str, Field(max_length=200)]] = []


class ExperienceContent(CamelModel):
    items: List[ExperienceItem] = []


class EducationItem(CamelModel):
    degree: str = Field(..., min_length=1, max_length=100)
    institution: str = Field(..., min_length=1, max_length=100)
    location: str = Field(default="", max_length=100)
    start_date: date
    end_date: Optional[date] = None
    current: bool = False
    gpa: str = Field(default="", max_length=10)
    description: str = Field(default="", max_length=500)
    achievements: List[Annotated[str, Field(max_length=200)]] = []


class EducationContent(CamelModel):
    items: List[EducationItem] = []


# ---------------------------------------------------------------------------
# Block variants: the tagged union
# ---------------------------------------------------------------------------

class BlockBase(CamelModel):
    id: str
    order: int = 0
    visible: bool = True
    settings: dict[str, Any] = {}


class BioBlock(BlockBase):
    type: Literal["bio"] = "bio"
    content: BioContent


class ProjectsBlock(BlockBase):
    type: Literal["projects"] = "projects"
    content: ProjectsContent


class SkillsBlock(BlockBase):
    type: Literal["skills"] = "skills"
    content: SkillsContent


class BlogBlock(BlockBase):
    type: Literal["blog"] = "blog"
    content: BlogContent


class TestimonialsBlock(BlockBase):
    type: Literal["testimonials"] = "testimonials"
    content: TestimonialsContent


class ContactBlock(BlockBase):
    type: Literal["contact"] = "contact"
    content: ContactContent


class ResumeBlock(BlockBase):
    type: Literal["resume"] = "resume"
    content: ResumeContent


class ExperienceBlock(BlockBase):
    type: Literal["experience"] = "experience"
    content: ExperienceContent


class EducationBlock(BlockBase):
    type: Literal["education"] = "education"
    content: EducationContent


Block = Annotated[
    Union[
        BioBlock,
        ProjectsBlock,
        SkillsBlock,
        BlogBlock,
        TestimonialsBlock,
        ContactBlock,
        ResumeBlock,
        ExperienceBlock,
        EducationBlock,
    ],
    Field(discriminator="type"),
]

BLOCK_ADAPTER: TypeAdapter = TypeAdapter(Block)

BLOCK_TYPES: tuple[str, ...] = (
    "bio",
    "projects",
    "skills",
    "blog",
    "testimonials",
    "contact",
    "resume",
    "experience",
    "education",
)


def new_block_id() -> str:
    return f"block_{uuid.uuid4().hex}"


def camelize_keys(patch: dict[str, Any]) -> dict[str, Any]:
    """Top-level snake_case keys → camelCase so they merge onto dumped (by_alias) data."""
    return {(to_camel(k) if "_" in k else k): v for k, v in patch.items()}


def _validate(data: dict[str, Any]) -> Block:
    block_type = data.get("type")
    if block_type not in BLOCK_TYPES:
        raise ValidationError(
            f"Unknown block type {block_type!r}",
            [{"field": "type", "issue": f"must be one of: {', '.join(BLOCK_TYPES)}"}],
        )
    try:
        return BLOCK_ADAPTER.validate_python(data)
    except PydanticValidationError as exc:
        raise ValidationError.from_pydantic(
            exc, f"Invalid content for block type '{block_type}'"
        ) from exc


def build_block(
    block_type: Any,
    content: Any,
    *,
    block_id: Optional[str] = None,
    order: int = 0,
    visible: bool = True,
    settings: Optional[dict[str, Any]] = None,
) -> Block:
    """
    Validate raw input into a typed Block.

    Raises:
        ValidationError: unknown type, or content that does not match the type's schema.
    """
    if not isinstance(content, dict):
        raise ValidationError(
            "Block content must be an object",
            [{"field": "content", "issue": "expected a JSON object"}],
        )
    return _validate({
        "id": block_id or new_block_id(),
        "type": block_type,
        "content": content,
        "order": order,
        "visible": visible,
        "settings": settings or {},
    })


def merge_block(
    block: Block,
    content: Optional[dict[str, Any]] = None,
    visible: Optional[bool] = None,
    settings: Optional[dict[str, Any]] = None,
) -> Block:
    """
    Return a copy of `block` with a shallow content/settings merge applied.

    Content keys the caller did not mention survive; the merged content is
    revalidated against the block's own type.
    """
    data = block.model_dump(by_alias=True)
    if content is not None:
        if not isinstance(content, dict):
            raise ValidationError(
                "Block content must be an object",
                [{"field": "content", "issue": "expected a JSON object"}],
            )
        data["content"] = {**data["content"], **camelize_keys(content)}
    if visible is not None:
        data["visible"] = visible
    if settings is not None:
        data["settings"] = {**data["settings"], **settings}
    return _validate(data)
