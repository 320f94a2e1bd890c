"""
Markdown blog front-end. Finds post files under a content root, reads
their front matter, and lists or renders them newest-first. Run with
``mdblog --help``.
"""

import asyncio
import click
import dataclasses
import datetime
import dateutil.parser
import functools
import html
import json
import markdown
import os
from os import path
import pathlib
import pygments.formatters
import re
import sys
import yaml

#### Settings

config_file_name = "mdblog.json"

default_extension = ".md"
default_output_dir = "build"
default_site_title = "Blog"

# Fence languages Pygments should see under another name
default_highlight_aliases = {"c++": "cpp"}

katex_base = "https://cdn.jsdelivr.net/npm/katex@0.16.9/dist"


#### CLI

# Commands later hook into this as @cli.command()
@click.group()
@click.option(
    '--site', 'site_dir', default='.', show_default=True,
    type=click.Path(exists=True, file_okay=False),
    help=f"Site directory containing {config_file_name}.",
)
@click.pass_context
def cli(ctx, site_dir):
    ctx.obj = site_dir


#### Errors


class ConfigError(click.ClickException):
    """The site configuration is missing or unusable."""


class FrontMatterError(Exception):
    """A post's front matter is missing or could not be parsed."""


class PostPathError(ValueError):
    """A discovered post path is not under the content root or lacks the extension."""


class InvalidDateError(ValueError):
    pass


##### Utilities


def log(msg):
    """Log messages to STDERR."""
    print(str(msg), file=sys.stderr)


def update_value(dictionary, key, fn):
    """
    If the key is in the dictionary, call fn with the value and store that back.
    """
    if key in dictionary:
        dictionary[key] = fn(dictionary[key])


re_inline_code = re.compile(r'`(.*)`')


def codify(s):
    """
    Wrap backtick-quoted text in ``<code>`` tags.

    The match is greedy and does not cross lines, so a line holding
    several code spans becomes one span running from its first backtick
    to its last.
    """
    return re_inline_code.sub(r'<code>\1</code>', s)


def dateify(s):
    """Truncate a timestamp string to its date part."""
    return s[:10]


def strcmp(s1, s2):
    if s1 < s2:
        return -1
    if s1 > s2:
        return 1
    return 0


#### Configuration


config_keys_required = {'content_root'}
config_keys_optional = {
    'extension', 'output_dir', 'site_title', 'base_path', 'strict_dates',
    'highlight_aliases',
}


@dataclasses.dataclass(frozen=True)
class SiteConfig:
    """
    Where posts live and how the site is built.

    ``content_root`` and ``output_dir`` are relative to ``site_dir``.
    Logical post paths are rooted at ``site_dir``, so a post at
    ``<site_dir>/posts/a.md`` has logical path ``/posts/a.md``.
    """
    site_dir: pathlib.Path
    content_root: str
    extension: str = default_extension
    output_dir: str = default_output_dir
    site_title: str = default_site_title
    base_path: str = ''
    strict_dates: bool = False
    highlight_aliases: dict = dataclasses.field(
        default_factory=lambda: dict(default_highlight_aliases)
    )

    @property
    def content_dir(self):
        return self.site_dir / self.content_root

    @property
    def path_prefix(self):
        """Leading part of every logical post path, up to and including the slash."""
        return '/' + self.content_root + '/'

    @property
    def output_path(self):
        return self.site_dir / self.output_dir


def config_value(raw, key, default, kind):
    """
    Look up an optional config key, raising ConfigError if it isn't a ``kind``.
    """
    value = raw.get(key, default)
    if not isinstance(value, kind):
        raise ConfigError(f"{key} must be a {kind.__name__}, got {value!r}")
    return value


def load_config(site_dir):
    """
    Read ``mdblog.json`` from the site dir and return a SiteConfig.

    Raises ConfigError if the file is missing, malformed, lacks required
    keys, or has values of the wrong shape. Unknown keys are reported
    and ignored.
    """
    site_dir = pathlib.Path(site_dir)
    config_path = site_dir / config_file_name
    try:
        with open(config_path, 'r', encoding='utf-8') as cf:
            raw = json.loads(cf.read())
    except FileNotFoundError:
        raise ConfigError(f"No {config_file_name} found in {site_dir}")
    except ValueError as e:
        raise ConfigError(f"Could not parse {config_path}: {e}")

    if not isinstance(raw, dict):
        raise ConfigError(f"{config_file_name} must contain a JSON object")
    if missing_config_keys := config_keys_required - raw.keys():
        raise ConfigError(f"Missing configuration keys in {config_file_name}: {missing_config_keys!r}")
    if extra_config_keys := raw.keys() - config_keys_required - config_keys_optional:
        log(f"WARNING: Unrecognized configuration keys in {config_file_name}: {extra_config_keys!r}")

    content_root = raw['content_root']
    if not isinstance(content_root, str):
        raise ConfigError("content_root must be a non-empty path")
    root_parts = pathlib.PurePosixPath(content_root.strip('/')).parts
    if '..' in root_parts:
        raise ConfigError(f"content_root must stay inside the site dir: {content_root!r}")
    if not root_parts:
        raise ConfigError("content_root must be a non-empty path")
    # Same spelling pathlib gives the globbed paths, so prefixes line up
    content_root = '/'.join(root_parts)

    extension = config_value(raw, 'extension', default_extension, str)
    if not extension.startswith('.') or len(extension) < 2:
        raise ConfigError(f"extension must look like '.md', got {extension!r}")

    aliases = dict(default_highlight_aliases)
    configured_aliases = config_value(raw, 'highlight_aliases', {}, dict)
    for lang, alias in configured_aliases.items():
        if not isinstance(alias, str):
            raise ConfigError(f"highlight_aliases values must be strings, got {lang!r}: {alias!r}")
    aliases.update(configured_aliases)

    return SiteConfig(
        site_dir=site_dir,
        content_root=content_root,
        extension=extension,
        output_dir=config_value(raw, 'output_dir', default_output_dir, str),
        site_title=config_value(raw, 'site_title', default_site_title, str),
        base_path=config_value(raw, 'base_path', '', str).rstrip('/'),
        strict_dates=config_value(raw, 'strict_dates', False, bool),
        highlight_aliases=aliases,
    )


#### Loading


fm_sep = '---'
# Consume the newline following the separator as well -- it's not part
# of the content.
fm_sep_re = re.compile('^' + re.escape(fm_sep) + r'[ \t]*(?:\n|\Z)', re.MULTILINE)


def parse_yaml_front_matter(yaml_str):
    meta = yaml.safe_load(yaml_str)
    # An empty block is no metadata, not an error
    return {} if meta is None else meta


def split_front_matter(file_path):
    """
    Return parsed front matter and post content as data/string tuple.

    Two layouts are recognized:

    - YAML fenced by ``---`` lines, starting on the first line of the file
    - JSON from the start of the file up to the first ``---`` line

    Raises FrontMatterError if the file isn't UTF-8, no separator is
    found, the metadata does not parse, or it is not a mapping.
    """
    try:
        with open(file_path, 'r', encoding='utf-8') as f:
            combo_raw = f.read()
    except UnicodeDecodeError as e:
        log(f"ERROR: Could not decode file {file_path} as UTF-8: {e}")
        raise FrontMatterError(f"Could not decode {file_path} as UTF-8: {e}") from e

    opening = fm_sep_re.match(combo_raw)
    if opening:
        meta_begin = opening.end()
        m = fm_sep_re.search(combo_raw, meta_begin)
        parse = parse_yaml_front_matter
    else:
        meta_begin = 0
        m = fm_sep_re.search(combo_raw)
        parse = json.loads
    if m is None:
        log(f"ERROR: Couldn't find front-matter separator in file {file_path}")
        raise FrontMatterError(f"No front-matter separator in {file_path}")
    fm_end, content_begin = m.span()

    try:
        meta = parse(combo_raw[meta_begin:fm_end])
    except (ValueError, yaml.YAMLError) as e:
        log(f"ERROR: Could not parse front matter in file {file_path}: {e}")
        raise FrontMatterError(f"Could not parse front matter in {file_path}: {e}") from e
    if not isinstance(meta, dict):
        log(f"ERROR: Front matter in file {file_path} is not a mapping")
        raise FrontMatterError(f"Front matter in {file_path} is not a mapping")
    return (meta, combo_raw[content_begin:])


def date_to_string(value):
    """YAML reads bare dates as date objects; keep everything as text."""
    if isinstance(value, datetime.date):
        return value.isoformat()
    if isinstance(value, str):
        return value
    if value is None:
        return ''
    return str(value)


re_iso_date_prefix = re.compile(r'^[0-9]{4}-[0-9]{2}-[0-9]{2}')


def check_date(date, file_path):
    """
    Raise InvalidDateError unless ``date`` is a zero-padded ISO-8601 string.
    """
    if not isinstance(date, str) or not re_iso_date_prefix.match(date):
        raise InvalidDateError(f"Post {file_path} has no zero-padded ISO-8601 date: {date!r}")
    try:
        dateutil.parser.isoparse(date)
    except ValueError as e:
        raise InvalidDateError(f"Post {file_path} has an invalid date {date!r}: {e}") from e


async def resolve_metadata(file_path, strict_dates=False):
    """Parse one post's front matter off the event loop."""
    (meta, _content_raw) = await asyncio.to_thread(split_front_matter, file_path)
    update_value(meta, 'date', date_to_string)
    if strict_dates:
        check_date(meta.get('date'), file_path)
    return meta


def glob_posts(config):
    """
    Find all post files under the content root.

    Returns a dict mapping each file's logical path to a zero-argument
    coroutine function that resolves its metadata. No file is read until
    its resolver is awaited.
    """
    if not path.isdir(config.content_dir):
        log(f"WARNING: Content directory {config.content_dir} does not exist")
        return {}

    sources = {}
    for file_path in sorted(config.content_dir.glob('**/*' + config.extension)):
        if not file_path.is_file():
            continue
        logical_path = '/' + file_path.relative_to(config.site_dir).as_posix()
        sources[logical_path] = functools.partial(
            resolve_metadata, file_path, strict_dates=config.strict_dates
        )
    return sources


def post_path_to_slug(post_path, prefix, suffix):
    """
    Strip the content-root prefix and the extension from a logical path.

    Raises PostPathError if either is missing or nothing is left.
    """
    if not post_path.startswith(prefix):
        raise PostPathError(f"Post path {post_path!r} does not start with {prefix!r}")
    if not post_path.endswith(suffix):
        raise PostPathError(f"Post path {post_path!r} does not end with {suffix!r}")
    slug = post_path[len(prefix):len(post_path) - len(suffix)]
    if not slug:
        raise PostPathError(f"Post path {post_path!r} has an empty slug")
    return slug


def slug_to_file(config, slug):
    """Physical file for a slug; the inverse of post_path_to_slug."""
    return config.content_dir / (slug + config.extension)


async def fetch_posts(sources, prefix, suffix):
    """
    Resolve every source's metadata concurrently, pairing each with its slug.

    All resolvers start together and are awaited as a group. Results keep
    the order of ``sources`` regardless of completion order. The first
    failure propagates and no posts are returned.
    """
    async def fetch_one(post_path, resolver):
        slug = post_path_to_slug(post_path, prefix, suffix)
        meta = await resolver()
        return {'meta': meta, 'path': slug}

    tasks = [fetch_one(post_path, resolver) for post_path, resolver in sources.items()]
    return list(await asyncio.gather(*tasks))


def post_date(post):
    return post['meta'].get('date', '')


def sort_posts(posts):
    """
    Return posts ordered newest-first by their ``date`` strings.

    This is plain string comparison: it is only correct for zero-padded
    ISO-8601 dates, and anything else silently misorders. Posts with equal
    dates keep their input order.
    """
    by_date = functools.cmp_to_key(lambda a, b: strcmp(post_date(a), post_date(b)))
    return sorted(posts, key=by_date, reverse=True)


def load_post_list(config):
    """Discover, resolve, and order all posts for the site."""
    sources = glob_posts(config)
    posts = asyncio.run(fetch_posts(sources, config.path_prefix, config.extension))
    return sort_posts(posts)


#### Rendering


markdown_extensions = [
    'fenced_code',  # ``` code fences
    'codehilite',  # Pygments highlighting of fenced code
    'tables',
    'pymdownx.arithmatex',  # $inline$ and $$block$$ math, rendered by KaTeX
]
markdown_extension_configs = {
    'codehilite': {'guess_lang': False, 'css_class': 'codehilite'},
    'pymdownx.arithmatex': {'generic': True},
}

re_fence_lang = re.compile(
    r'^(?P<fence>[ \t]*(?:`{3,}|~{3,})[ \t]*)(?P<lang>[^\s{`]+)', re.MULTILINE
)


def apply_highlight_aliases(content_raw, aliases):
    """Rename the language on opening code fences according to ``aliases``."""
    def swap(m):
        lang = m.group('lang')
        return m.group('fence') + aliases.get(lang, lang)
    return re_fence_lang.sub(swap, content_raw)


def content_to_html(content_raw, config):
    """
    Generate HTML from post markdown.
    """
    return markdown.markdown(
        apply_highlight_aliases(content_raw, config.highlight_aliases),
        extensions=markdown_extensions,
        extension_configs=markdown_extension_configs,
        output_format='html5',
    )


def post_url(config, slug):
    return f"{config.base_path}/{slug}/"


def generate_listing_page(posts_desc, config):
    """
    Return HTML for the list of all posts, given posts in descending order by date.
    """
    # Escape first: codify only adds markup around the backtick spans
    safe_html_listing = ""
    for post in posts_desc:
        meta = post['meta']
        title = str(meta.get('title', post['path']))
        safe_html_listing += (
            f"""<li><span class="date">{html.escape(dateify(post_date(post)))}</span> """
            f"""<a href="{html.escape(post_url(config, post['path']))}">{codify(html.escape(title, quote=False))}</a></li>\n"""
        )

    return f"""<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8" />
  <title>{html.escape(config.site_title)}</title>
  <link rel="stylesheet" href="{html.escape(config.base_path)}/code.css" type="text/css" />
</head>
<body>
  <h1>{html.escape(config.site_title)}</h1>
  <ul class="posts">
{safe_html_listing}  </ul>
</body>
</html>
"""


def generate_post_page(post, safe_html_content, config):
    meta = post['meta']
    title = str(meta.get('title', post['path']))

    return f"""<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8" />
  <title>{html.escape(title)} | {html.escape(config.site_title)}</title>
  <link rel="stylesheet" href="{html.escape(config.base_path)}/code.css" type="text/css" />
  <link rel="stylesheet" href="{katex_base}/katex.min.css" />
  <script defer src="{katex_base}/katex.min.js"></script>
  <script defer src="{katex_base}/contrib/auto-render.min.js" onload="renderMathInElement(document.body);"></script>
</head>
<body>
  <p><a href="{html.escape(config.base_path)}/">{html.escape(config.site_title)}</a></p>
  <article class="post">
    <h1>{codify(html.escape(title, quote=False))}</h1>
    <p class="date">{html.escape(dateify(post_date(post)))}</p>
    {safe_html_content}
  </article>
</body>
</html>
"""


#### Command: list


@cli.command(name='list')
@click.pass_obj
def cmd_list(site_dir):
    """List posts, newest first."""
    config = load_config(site_dir)
    for post in load_post_list(config):
        title = post['meta'].get('title', post['path'])
        print(f"{dateify(post_date(post))}\t{post['path']}\t{title}")


#### Command: generate


@cli.command(name='generate')
@click.pass_obj
def cmd_generate(site_dir):
    """Generate the site."""
    config = load_config(site_dir)

    gen_root = config.output_path.resolve()
    if gen_root == config.site_dir.resolve() or config.content_dir.resolve().is_relative_to(gen_root):
        raise ConfigError(f"output_dir {config.output_dir!r} would overwrite the site sources")

    # Load all posts before writing anything
    posts_desc = load_post_list(config)
    pages = []
    for post in posts_desc:
        (_meta, content_raw) = split_front_matter(slug_to_file(config, post['path']))
        pages.append((post, content_to_html(content_raw, config)))

    # Only rewrite files whose content changed, then delete whatever
    # wasn't generated this time.
    paths_written = set()

    def write_and_record(abs_path, content):
        """
        Write to the path if the contents differ, and note as written.
        """
        newbytes = content.encode()

        if path.exists(abs_path):
            with open(abs_path, 'rb') as f:
                oldbytes = f.read()
        else:
            oldbytes = None

        if newbytes != oldbytes:
            os.makedirs(path.dirname(abs_path), exist_ok=True)
            with open(abs_path, 'wb') as f:
                f.write(newbytes)
            if oldbytes is None:
                print(f"Creating {abs_path}")
            else:
                print(f"Updating {abs_path}")

        paths_written.add(abs_path)

    for post, safe_html_content in pages:
        write_and_record(
            path.join(gen_root, *post['path'].split('/'), 'index.html'),
            generate_post_page(post, safe_html_content, config)
        )

    write_and_record(
        path.join(gen_root, 'index.html'),
        generate_listing_page(posts_desc, config)
    )
    write_and_record(
        path.join(gen_root, 'code.css'),
        pygments.formatters.HtmlFormatter().get_style_defs('.codehilite')
    )

    # Remove all files that weren't re-generated
    for parent, _dirnames, filenames in os.walk(gen_root, topdown=False):
        for filename in filenames:
            filepath = path.join(parent, filename)
            if filepath not in paths_written:
                os.remove(filepath)
                print(f"Deleting stale {filepath}")
        if parent != str(gen_root) and not os.listdir(parent):
            os.rmdir(parent)
            print(f"Deleting empty {parent}")

    log(f"INFO: Processed {len(posts_desc)} posts")


#### Main


if __name__ == '__main__':
    cli()
