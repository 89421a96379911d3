"""Node script used as the direct-upload fallback.

The script runs inside the sandbox, reads the build output itself and POSTs it
as JSON. The plane URL and API key are passed through the environment
(`DEPLOY_PLANE_URL`, `DEPLOY_API_KEY`) so they never appear in the script
file or its logs.
"""

from __future__ import annotations

import json

RESULT_MARKER = "__DEPLOY_RESULT__"
MAX_FILES = 500
BINARY_EXTENSIONS: tuple[str, ...] = (
    "jpg",
    "jpeg",
    "png",
    "gif",
    "ico",
    "svg",
    "pdf",
    "zip",
    "tar",
    "gz",
    "mp4",
    "mp3",
    "woff",
    "woff2",
    "ttf",
    "eot",
)

_TEMPLATE = r"""
const fs = require('fs');
const path = require('path');
const https = require('https');
const http = require('http');

const ROOT = __ROOT__;
const PROJECT_ID = __PROJECT_ID__;
const APP_NAME = __APP_NAME__;
const MAX_FILES = __MAX_FILES__;
const MARKER = __MARKER__;
const BINARY = new RegExp('\\.(' + __BINARY__.join('|') + ')$', 'i');

function report(result) {
  console.log(MARKER + JSON.stringify(result));
}

function walk(dir, out) {
  for (const entry of fs.readdirSync(dir, { withFileTypes: true })) {
    if (out.length >= MAX_FILES) return;
    if (entry.name === 'node_modules') continue;
    const full = path.join(dir, entry.name);
    if (entry.isDirectory()) walk(full, out);
    else if (entry.isFile()) out.push(full);
  }
}

function main() {
  const base = process.env.DEPLOY_PLANE_URL;
  const key = process.env.DEPLOY_API_KEY;
  if (!base || !key) {
    report({ success: false, error: 'deployment plane is not configured' });
    process.exit(1);
  }

  const paths = [];
  walk(ROOT, paths);
  const files = [];
  for (const full of paths) {
    const rel = path.relative(ROOT, full);
    if (!rel || rel === '.') continue;
    try {
      const content = fs.readFileSync(full);
      const binary = BINARY.test(rel);
      files.push({
        path: rel,
        content: binary ? content.toString('base64') : content.toString('utf8'),
        encoding: binary ? 'base64' : 'utf8',
      });
    } catch (err) {
      console.warn('Failed to read ' + rel + ': ' + err.message);
    }
  }
  if (files.length === 0) {
    report({ success: false, error: 'No readable files found for deployment' });
    process.exit(1);
  }

  const payload = JSON.stringify({ projectId: PROJECT_ID, name: APP_NAME, files });
  const url = new URL(base.replace(/\/+$/, '') + '/api/deploy/direct');
  const client = url.protocol === 'https:' ? https : http;
  const req = client.request(
    {
      hostname: url.hostname,
      port: url.port || (url.protocol === 'https:' ? 443 : 80),
      path: url.pathname,
      method: 'POST',
      headers: {
        'Content-Type': 'application/json',
        'Content-Length': Buffer.byteLength(payload),
        'Authorization': 'Bearer ' + key,
        'bypass-tunnel-reminder': 'true',
      },
    },
    (res) => {
      let data = '';
      res.on('data', (chunk) => { data += chunk; });
      res.on('end', () => {
        report({ success: true, status: res.statusCode, body: data, files: files.length });
      });
    },
  );
  req.setTimeout(120000, () => req.destroy(new Error('request timed out')));
  req.on('error', (err) => {
    report({ success: false, error: err.message });
    process.exit(1);
  });
  req.write(payload);
  req.end();
}

main();
"""


def build_direct_upload_script(
    *,
    root: str,
    project_id: str,
    name: str,
    max_files: int = MAX_FILES,
) -> str:
    """Render the fallback uploader for the build output at `root`."""
    replacements = {
        "__ROOT__": json.dumps(root),
        "__PROJECT_ID__": json.dumps(project_id),
        "__APP_NAME__": json.dumps(name),
        "__MAX_FILES__": str(int(max_files)),
        "__MARKER__": json.dumps(RESULT_MARKER),
        "__BINARY__": json.dumps(list(BINARY_EXTENSIONS)),
    }
    script = _TEMPLATE
    for placeholder, value in replacements.items():
        script = script.replace(placeholder, value)
    return script.lstrip()


def parse_script_output(output: str) -> dict | None:
    """Last result line printed by the script, or None when it never reported."""
    result = None
    for line in (output or "").splitlines():
        idx = line.find(RESULT_MARKER)
        if idx < 0:
            continue
        try:
            result = json.loads(line[idx + len(RESULT_MARKER) :])
        except ValueError:
            continue
    return result if isinstance(result, dict) else None
