import json
import logging
import mimetypes

from flask import Flask, Response, abort, jsonify, render_template_string, request, send_file, stream_with_context

from .edit import EditSession
from .errors import EncodingError, InvalidPathError, IoError, NoteNotFoundError
from .pathindex import normalize_note_path
from .sync import SyncCoordinator

logger = logging.getLogger(__name__)

KEEPALIVE_SECONDS = 15.0
DIRECTORY_INDEXES = ("README.md", "INDEX.md")


def _note_path(raw_path: str) -> str:
    try:
        return normalize_note_path(raw_path)
    except InvalidPathError:
        abort(403)


def _directory_page(coordinator: SyncCoordinator, path: str):
    for name in DIRECTORY_INDEXES:
        candidate = f"{path}/{name}" if path else name
        node = coordinator.lookup(candidate)
        if node is not None and not node.is_dir:
            doc = coordinator.document(candidate)
            return {"type": "folder", "path": path, "title": doc.title, "html": doc.html,
                    "source": candidate, "mtime": doc.mtime}
    children = [{"name": c.name, "path": c.path, "type": "folder" if c.is_dir else "file"}
                for c in coordinator.children(path)]
    title = path.rsplit("/", 1)[-1] if path else "Notes"
    return {"type": "folder", "path": path, "title": title, "html": "", "children": children}


def create_app(coordinator: SyncCoordinator, editor: EditSession | None = None) -> Flask:
    app = Flask(__name__)
    editor = editor or EditSession(coordinator)

    @app.route("/")
    def index():
        return render_template_string(MAIN_TEMPLATE)

    @app.route("/api/config")
    def api_config():
        return jsonify({
            "live_reload": coordinator.live_reload,
            "max_results": coordinator.config.max_results,
            "debounce_ms": coordinator.config.debounce_ms,
        })

    @app.route("/api/tree")
    def api_tree():
        return jsonify(coordinator.tree())

    @app.route("/api/note/", defaults={"note_path": ""})
    @app.route("/api/note/<path:note_path>")
    def api_note(note_path):
        rel = _note_path(note_path)
        node = coordinator.lookup(rel)
        if node is None:
            abort(404)
        if node.is_dir:
            return jsonify(_directory_page(coordinator, rel))
        try:
            doc = coordinator.document(rel)
        except NoteNotFoundError:
            abort(404)
        except EncodingError as e:
            return jsonify({"error": e.message}), 415
        except IoError as e:
            logger.error("Cannot load %s: %s", rel, e.message)
            abort(500)
        return jsonify({"type": "file", "html": doc.html, "path": doc.path, "title": doc.title,
                        "mtime": doc.mtime})

    @app.route("/raw/<path:file_path>")
    def raw_file(file_path):
        rel = _note_path(file_path)
        node = coordinator.lookup(rel)
        if node is not None and not node.is_dir:
            try:
                data = coordinator.raw(rel)
            except NoteNotFoundError:
                abort(404)
            except IoError as e:
                logger.error("Cannot read %s: %s", rel, e.message)
                abort(500)
            return Response(data, mimetype="text/markdown")
        if coordinator.config.is_ignored(rel):
            abort(404)
        try:
            fpath = coordinator.store.resolve(rel)
        except InvalidPathError:
            abort(403)
        if not fpath.is_file():
            abort(404)
        mime, _ = mimetypes.guess_type(str(fpath))
        return send_file(fpath, mimetype=mime)

    @app.route("/save", methods=["POST"])
    def save():
        body, status = editor.save_request(request.get_json(silent=True))
        return jsonify(body), status

    @app.route("/api/search")
    def api_search():
        query = request.args.get("q", "")
        hits = coordinator.search(query)
        return jsonify({
            "query": query,
            "results": [{"path": h.path, "snippet": h.snippet, "score": h.score} for h in hits],
        })

    @app.route("/events")
    def events():
        sub = coordinator.subscribe()

        def stream():
            try:
                yield ": connected\n\n"
                while True:
                    message = sub.receive(timeout=KEEPALIVE_SECONDS)
                    if message is None:
                        if sub.closed:
                            return
                        yield ": keepalive\n\n"
                        continue
                    yield f"data: {json.dumps(message)}\n\n"
            finally:
                coordinator.unsubscribe(sub.id)

        return Response(stream_with_context(stream()), mimetype="text/event-stream",
                        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"})

    return app


MAIN_TEMPLATE = r"""<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>para</title>
<style>

*, *::before, *::after { box-sizing: border-box; margin: 0; padding: 0; }

:root {
  --bg-primary: #1a1a2e;
  --bg-secondary: #16162a;
  --bg-hover: rgba(134,112,255,.08);
  --bg-active: rgba(134,112,255,.15);
  --text: #e0def4;
  --text-muted: #908caa;
  --accent: #8673ff;
  --border: rgba(255,255,255,.06);
  --sidebar-width: 280px;
  --font: -apple-system, BlinkMacSystemFont, 'Segoe UI', 'Inter', Roboto, Ubuntu, sans-serif;
  --font-mono: 'Fira Code', 'JetBrains Mono', 'Source Code Pro', 'Consolas', monospace;
  --radius: 4px;
}

html, body { height: 100%; background: var(--bg-primary); color: var(--text); font-family: var(--font); font-size: 16px; line-height: 1.6; }
.app { display: flex; height: 100vh; overflow: hidden; }
.sidebar { width: var(--sidebar-width); background: var(--bg-secondary); display: flex; flex-direction: column; overflow: hidden; }
.sidebar-header { padding: 10px 14px; }
.search-input { width: 100%; padding: 6px 10px; background: var(--bg-primary); color: var(--text); border: 1px solid var(--border); border-radius: var(--radius); }
.file-tree { flex: 1; overflow-y: auto; padding: 4px 0; }
.tree-item { display: flex; align-items: center; gap: 6px; padding: 2px 14px 2px calc(14px + var(--depth, 0) * 14px); cursor: pointer; font-size: 14px; color: var(--text-muted); }
.tree-item:hover { background: var(--bg-hover); }
.tree-item.active { background: var(--bg-active); color: var(--text); }
.tree-children { display: none; }
.tree-children.open { display: block; }
.main { flex: 1; display: flex; flex-direction: column; min-width: 0; }
.topbar { display: flex; align-items: center; justify-content: space-between; padding: 6px 16px; border-bottom: 1px solid var(--border); font-size: 13px; color: var(--text-muted); }
.topbar-btn { background: none; border: 1px solid var(--border); color: var(--text); padding: 2px 10px; border-radius: var(--radius); cursor: pointer; }
.topbar-btn.primary { background: var(--accent); }
.live-dot { width: 8px; height: 8px; border-radius: 50%; background: #6e6a86; display: inline-block; margin-right: 6px; }
.live-dot.on { background: #3fb950; }
.content { flex: 1; overflow-y: auto; padding: 32px 48px; }
.markdown-body { max-width: 820px; }
.markdown-body h1, .markdown-body h2, .markdown-body h3 { margin: 1em 0 .4em; }
.markdown-body p, .markdown-body ul, .markdown-body ol, .markdown-body pre, .markdown-body table { margin: .6em 0; }
.markdown-body ul, .markdown-body ol { padding-left: 1.6em; }
.markdown-body a { color: var(--accent); }
.markdown-body pre, .markdown-body code { font-family: var(--font-mono); background: var(--bg-secondary); border-radius: var(--radius); }
.markdown-body pre { padding: 12px; overflow-x: auto; }
.search-result { margin: 14px 0; }
.search-result pre { white-space: pre-wrap; color: var(--text-muted); font-size: 14px; }
mark { background: var(--accent); color: var(--text); }
#editorTextarea { width: 100%; height: 100%; min-height: 70vh; background: var(--bg-secondary); color: var(--text); border: 1px solid var(--border); padding: 16px; font-family: var(--font-mono); font-size: 14px; }
</style>
</head>
<body>
<div class="app">
  <aside class="sidebar">
    <div class="sidebar-header">
      <input class="search-input" id="searchInput" type="search" placeholder="Search notes...">
    </div>
    <nav class="file-tree" id="fileTree"></nav>
  </aside>
  <section class="main">
    <div class="topbar">
      <span><span class="live-dot" id="liveDot"></span><span id="breadcrumb"></span></span>
      <span id="topbarActions"></span>
    </div>
    <div class="content" id="contentArea"><div class="markdown-body"><p>Select a note.</p></div></div>
  </section>
</div>
<script>
const $ = s => document.querySelector(s);
const fileTree = $('#fileTree');
const contentArea = $('#contentArea');
const breadcrumb = $('#breadcrumb');
const topbarActions = $('#topbarActions');
let currentNotePath = null;
let editMode = false;

function encodeURIPath(p) {
  return p.split('/').map(encodeURIComponent).join('/');
}

function esc(s) {
  const d = document.createElement('div');
  d.textContent = s;
  return d.innerHTML;
}

function renderTree(items, container, depth = 0) {
  items.forEach(item => {
    const row = document.createElement('div');
    row.className = 'tree-item';
    row.style.setProperty('--depth', depth);
    if (item.type === 'folder') {
      row.textContent = '▸ ' + item.name;
      const children = document.createElement('div');
      children.className = 'tree-children';
      row.addEventListener('click', () => children.classList.toggle('open'));
      container.appendChild(row);
      container.appendChild(children);
      renderTree(item.children || [], children, depth + 1);
    } else {
      row.dataset.path = item.path;
      row.textContent = item.name.replace(/\.md$/i, '');
      row.addEventListener('click', () => loadNote(item.path));
      container.appendChild(row);
    }
  });
}

async function reloadTree() {
  const res = await fetch('/api/tree');
  fileTree.innerHTML = '';
  renderTree(await res.json(), fileTree);
  markActive();
}

function markActive() {
  fileTree.querySelectorAll('.tree-item[data-path]').forEach(el => {
    el.classList.toggle('active', el.dataset.path === currentNotePath);
  });
}

function updateTopbar() {
  if (editMode) {
    topbarActions.innerHTML =
      '<button class="topbar-btn primary" id="saveBtn">Save</button> ' +
      '<button class="topbar-btn" id="cancelBtn">Cancel</button>';
    $('#saveBtn').addEventListener('click', saveEdit);
    $('#cancelBtn').addEventListener('click', cancelEdit);
  } else if (currentNotePath) {
    topbarActions.innerHTML = '<button class="topbar-btn" id="editBtn">Edit</button>';
    $('#editBtn').addEventListener('click', enterEditMode);
  } else {
    topbarActions.innerHTML = '';
  }
}

async function loadNote(path, {preserveScroll = false} = {}) {
  const scrollPos = preserveScroll ? contentArea.scrollTop : 0;
  try {
    const res = await fetch('/api/note/' + encodeURIPath(path));
    if (!res.ok) throw new Error('Not found');
    const data = await res.json();
    if (data.type === 'folder') {
      currentNotePath = data.source || null;
      const listing = (data.children || []).map(c =>
        `<li><a href="#" data-path="${esc(c.path)}" data-type="${c.type}">${esc(c.name)}</a></li>`).join('');
      contentArea.innerHTML = '<div class="markdown-body">' + (data.html || `<h1>${esc(data.title)}</h1><ul>${listing}</ul>`) + '</div>';
    } else {
      currentNotePath = data.path;
      contentArea.innerHTML = '<div class="markdown-body">' + data.html + '</div>';
    }
    breadcrumb.textContent = path || 'Notes';
    editMode = false;
    updateTopbar();
    markActive();
    contentArea.querySelectorAll('a[href^="#note:"]').forEach(a => {
      a.addEventListener('click', e => {
        e.preventDefault();
        loadNote(decodeURIComponent(a.getAttribute('href').slice(6)));
      });
    });
    contentArea.querySelectorAll('a[data-path]').forEach(a => {
      a.addEventListener('click', e => {
        e.preventDefault();
        loadNote(a.dataset.path);
      });
    });
    contentArea.scrollTop = scrollPos;
    if (!preserveScroll) history.pushState({ path }, '', '?note=' + encodeURIComponent(path));
  } catch (e) {
    contentArea.innerHTML = '<div class="markdown-body"><p>Could not load note: ' + esc(path) + '</p></div>';
  }
}

async function enterEditMode() {
  if (!currentNotePath) return;
  const res = await fetch('/raw/' + encodeURIPath(currentNotePath));
  if (!res.ok) { alert('Could not load note source'); return; }
  const text = await res.text();
  contentArea.innerHTML = '<textarea id="editorTextarea" spellcheck="false"></textarea>';
  $('#editorTextarea').value = text;
  editMode = true;
  updateTopbar();
}

async function saveEdit() {
  const ta = $('#editorTextarea');
  if (!ta) return;
  const res = await fetch('/save', {
    method: 'POST',
    headers: {'Content-Type': 'application/json'},
    body: JSON.stringify({path: currentNotePath, content: ta.value})
  });
  const result = await res.json();
  if (!result.success) {
    alert('Save failed: ' + (result.error || 'Unknown error'));
    return;
  }
  editMode = false;
  await loadNote(currentNotePath, {preserveScroll: true});
}

function cancelEdit() {
  editMode = false;
  loadNote(currentNotePath);
}

async function runSearch(q) {
  if (!q.trim()) { contentArea.innerHTML = '<div class="markdown-body"><p>Enter a search term above.</p></div>'; return; }
  const res = await fetch('/api/search?q=' + encodeURIComponent(q));
  const data = await res.json();
  const re = new RegExp(q.replace(/[.*+?^${}()|[\]\\]/g, '\\$&'), 'gi');
  const body = data.results.length
    ? data.results.map(r => `<div class="search-result"><a href="#" data-path="${esc(r.path)}">${esc(r.path)}</a><pre>${esc(r.snippet).replace(re, m => '<mark>' + m + '</mark>')}</pre></div>`).join('')
    : '';
  contentArea.innerHTML = `<div class="markdown-body"><h1>${data.results.length ? 'Search results for' : 'No results for'} "${esc(q)}"</h1>${body}</div>`;
  contentArea.querySelectorAll('a[data-path]').forEach(a => {
    a.addEventListener('click', e => { e.preventDefault(); loadNote(a.dataset.path); });
  });
  currentNotePath = null;
  updateTopbar();
}

let searchTimer = null;
$('#searchInput').addEventListener('input', e => {
  clearTimeout(searchTimer);
  searchTimer = setTimeout(() => runSearch(e.target.value), 200);
});

function connectLiveReload() {
  const source = new EventSource('/events');
  source.onopen = () => $('#liveDot').classList.add('on');
  source.onmessage = async e => {
    const data = JSON.parse(e.data);
    if (data.type !== 'reload') return;
    await reloadTree();
    if (!editMode && currentNotePath && data.path === currentNotePath) {
      loadNote(currentNotePath, {preserveScroll: true});
    }
  };
  source.onerror = () => $('#liveDot').classList.remove('on');
}

(async () => {
  await reloadTree();
  const note = new URLSearchParams(location.search).get('note');
  if (note !== null) loadNote(note, {preserveScroll: true});
  connectLiveReload();
})();
</script>
</body>
</html>
"""
