"""
Default site library.

Renders Markdown pages with YAML frontmatter to static HTML using Jinja2
templates, and links the UI bundle and stylesheet built by the asset
pipeline. This is what the orchestrator delegates to unless
IIIFSITE_LIBRARY (or "library" in iiifsite.json) names another module.

    content/index.md           -> site/index.html
    content/about.md           -> site/about/index.html
    content/works/item-1.md    -> site/works/item-1/index.html
"""

import functools
import http.server
import os
import re
import shutil
import socketserver
import threading
import unicodedata
from pathlib import Path

import frontmatter
import markdown
from jinja2 import ChoiceLoader, DictLoader, Environment, FileSystemLoader

from .config import DEV_ONCE_ENV, is_truthy, load_config, ui_paths
from .log import debug, describe, err, log, warn
from .watcher import watch_tree

ASSETS_URL_DIR = "_assets"
PAGE_SUFFIXES = {'.md', '.markdown'}
MARKDOWN_EXTENSIONS = ['extra', 'sane_lists']
UI_ARTIFACT_RE = re.compile(r'\.(mjs|css|map)$')

DEFAULT_TEMPLATE = """<!doctype html>
<html lang="{{ lang }}">
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1">
  <title>{% if page.title %}{{ page.title }} | {% endif %}{{ site_title }}</title>
  {% if page.description %}<meta name="description" content="{{ page.description }}">{% endif %}
  {% if stylesheet %}<link rel="stylesheet" href="{{ base_url }}{{ stylesheet }}">{% endif %}
</head>
<body>
  <header class="site-header"><a class="brand" href="{{ base_url }}">{{ site_title }}</a></header>
  <main class="content">{{ content | safe }}</main>
  {% if script %}<script type="module" src="{{ base_url }}{{ script }}"></script>{% endif %}
</body>
</html>
"""


# --- Utility Functions ---

def slugify(text: str) -> str:
    """ASCII path segment for a title or file name: 'Livre d'Heures' -> 'livre-d-heures'."""
    ascii_text = unicodedata.normalize('NFKD', text).encode('ascii', 'ignore').decode('ascii')
    return '-'.join(re.findall(r'[a-z0-9]+', ascii_text.lower())) or 'untitled'


def render_markdown(text: str) -> str:
    return markdown.markdown(text, extensions=MARKDOWN_EXTENSIONS, output_format='html')


def is_page_source(path) -> bool:
    return Path(path).suffix.lower() in PAGE_SUFFIXES


def is_template(path) -> bool:
    return Path(path).suffix.lower() in {'.html', '.jinja', '.j2'}


def is_ui_artifact(path) -> bool:
    return bool(UI_ARTIFACT_RE.search(Path(path).name))


def page_output_path(source: Path, content_dir: Path, output_dir: Path) -> Path:
    """content/a/b.md -> site/a/b/index.html; index.md stays at its directory root."""
    relative = source.relative_to(content_dir).with_suffix('')
    parts = [slugify(part) for part in relative.parts]
    if parts[-1] == 'index':
        parts = parts[:-1]
    return output_dir.joinpath(*parts, 'index.html')


def create_jinja_env(templates_dir: Path) -> Environment:
    """Project templates first, then the built-in page template."""
    loaders = []
    if templates_dir.exists():
        loaders.append(FileSystemLoader(str(templates_dir)))
    loaders.append(DictLoader({'page.html': DEFAULT_TEMPLATE}))
    env = Environment(loader=ChoiceLoader(loaders), autoescape=True)
    env.filters['slugify'] = slugify
    return env


# --- Build Functions ---

def copy_ui_artifacts(config: dict, output_dir: Path) -> dict:
    """Copy the client bundle and compiled stylesheet next to the pages."""
    paths = ui_paths(config)
    dest_dir = output_dir / ASSETS_URL_DIR
    linked = {'script': None, 'stylesheet': None}

    candidates = [
        ('script', paths['dist'] / 'index.mjs'),
        (None, paths['dist'] / 'index.mjs.map'),
        ('stylesheet', paths['styles_output']),
    ]
    for key, source in candidates:
        if not source.exists():
            continue
        dest_dir.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, dest_dir / source.name)
        if key:
            linked[key] = f"{ASSETS_URL_DIR}/{source.name}"
    return linked


def copy_static(assets_dir: Path, output_dir: Path) -> None:
    if not assets_dir.exists():
        return
    for item in assets_dir.iterdir():
        dest = output_dir / item.name
        if item.is_dir():
            shutil.copytree(item, dest, dirs_exist_ok=True)
        else:
            shutil.copy2(item, dest)


def build_site(config: dict = None) -> list:
    """Build every page. Returns the written HTML paths."""
    config = config or load_config()
    content_dir = Path(config['content_dir'])
    output_dir = Path(config['output_dir'])
    base_url = config.get('base_url', '/')

    if not content_dir.exists():
        warn(f"No content directory at {content_dir}/; building an empty site")

    # Clean and create output directory
    if output_dir.exists():
        shutil.rmtree(output_dir)
    output_dir.mkdir(parents=True)

    copy_static(Path(config['assets_dir']), output_dir)
    linked = copy_ui_artifacts(config, output_dir)
    env = create_jinja_env(Path(config['templates_dir']))

    written = []
    sources = sorted(p for p in content_dir.rglob('*') if p.is_file() and is_page_source(p)) \
        if content_dir.exists() else []
    for source in sources:
        post = frontmatter.load(source)
        metadata = dict(post.metadata)
        page = {
            'title': metadata.get('title') or source.stem.replace('-', ' ').title(),
            'description': metadata.get('description', ''),
            'metadata': metadata,
        }
        template = env.get_template(metadata.get('template', 'page.html'))
        html = template.render(
            site_title=config.get('site_title', ''),
            lang=metadata.get('lang', config.get('lang', 'en')),
            base_url=base_url,
            page=page,
            content=render_markdown(post.content),
            **linked,
        )
        dest = page_output_path(source, content_dir, output_dir)
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_text(html, encoding='utf-8')
        written.append(dest)
        debug(f"rendered {dest.relative_to(output_dir).as_posix()}", scope="site")

    log(f"Built {len(written)} page{'' if len(written) == 1 else 's'} into {output_dir}/", scope="site")
    return written


def build() -> None:
    """Library entry point: one-shot build."""
    build_site(load_config())


# --- Development ---

class RebuildScheduler:
    """
    Coalesces page and template changes into one site rebuild.

    Every schedule() call restarts a short quiet period; the rebuild runs
    once the burst is over and reports the files that triggered it.
    """

    def __init__(self, config: dict, debounce_ms: int = 150):
        self.config = config
        self.delay = debounce_ms / 1000.0
        self.changed = set()
        self.timer = None
        self.lock = threading.Lock()

    def schedule(self, changed: Path = None) -> None:
        with self.lock:
            if changed is not None:
                self.changed.add(Path(changed))
            if self.timer is not None:
                self.timer.cancel()
            self.timer = threading.Timer(self.delay, self._rebuild)
            self.timer.daemon = True
            self.timer.start()

    def cancel(self) -> None:
        with self.lock:
            if self.timer is not None:
                self.timer.cancel()
                self.timer = None
            self.changed.clear()

    def _rebuild(self) -> None:
        with self.lock:
            changed, self.changed = sorted(self.changed), set()
        names = ", ".join(p.name for p in changed) or "manual trigger"
        log(f"Rebuilding site ({names})", scope="watch")
        try:
            build_site(self.config)
        except Exception as e:
            err(f"Rebuild failed: {describe(e)}", scope="watch")


def sync_file(source: Path, source_root: Path, dest_root: Path) -> None:
    """Mirror one changed file into the output without a full rebuild."""
    try:
        relative = Path(source).resolve().relative_to(Path(source_root).resolve())
    except ValueError:
        return
    dest = dest_root / relative
    try:
        if Path(source).is_file():
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, dest)
            log(f"Copied {relative.as_posix()}", scope="assets")
        elif dest.exists() and not Path(source).exists():
            if dest.is_dir():
                shutil.rmtree(dest)
            else:
                dest.unlink()
            log(f"Removed {relative.as_posix()}", scope="assets")
    except OSError as e:
        warn(f"sync failed for {relative.as_posix()}: {describe(e)}", scope="assets")


def start_watches(config: dict, scheduler: RebuildScheduler) -> list:
    """Content/templates rebuild the site; assets and UI artifacts are copied as they change."""
    output_dir = Path(config['output_dir'])
    watches = []

    for directory, predicate in ((Path(config['content_dir']), is_page_source),
                                 (Path(config['templates_dir']), is_template)):
        if directory.exists():
            watches.append(watch_tree(directory, predicate, scheduler.schedule))

    assets_dir = Path(config['assets_dir'])
    if assets_dir.exists():
        watches.append(watch_tree(assets_dir, lambda p: True,
                                  lambda p: sync_file(p, assets_dir, output_dir)))

    paths = ui_paths(config)
    if paths['root'].exists():
        for directory in (paths['dist'], paths['styles_dir']):
            directory.mkdir(parents=True, exist_ok=True)
            watches.append(watch_tree(directory, is_ui_artifact,
                                      lambda p: copy_ui_artifacts(config, output_dir)))
    return watches


class ReusableTCPServer(socketserver.TCPServer):
    allow_reuse_address = True


class SiteRequestHandler(http.server.SimpleHTTPRequestHandler):
    """Static file handler; request lines only show up with IIIFSITE_DEBUG."""

    def log_message(self, format, *args):
        debug(format % args, scope="serve")


def serve(config: dict) -> None:
    """Serve the built site locally until interrupted."""
    # Absolute, so the handler keeps working while rebuilds replace the directory
    serve_dir = Path(config['output_dir']).resolve()
    port = int(os.environ.get('PORT') or config.get('port', 8000))
    handler = functools.partial(SiteRequestHandler, directory=str(serve_dir))

    with ReusableTCPServer(("", port), handler) as httpd:
        log(f"Serving {serve_dir} at http://localhost:{port}/ (Ctrl+C to stop)", scope="serve")
        httpd.serve_forever()


def dev() -> None:
    """Library entry point: build, then rebuild on change while serving the site."""
    config = load_config()
    log("Initial site build")
    build_site(config)
    if is_truthy(os.environ.get(DEV_ONCE_ENV)):
        return

    scheduler = RebuildScheduler(config)
    watches = start_watches(config, scheduler)
    try:
        serve(config)
    finally:
        scheduler.cancel()
        for watch in watches:
            watch.stop()
