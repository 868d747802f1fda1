#!/usr/bin/env python3
"""
VentasCom Order Agent - local JSON host with a small web UI
"""

import json
import logging
import re
from http.server import HTTPServer, SimpleHTTPRequestHandler
from urllib.parse import urlparse

from ventascom.catalog_client import CatalogClient, StaticCatalog
from ventascom.config import load_config
from ventascom.gemini_client import GeminiClient
from ventascom.grouping import commit_groups
from ventascom.logging_config import setup_logging
from ventascom.message_parser import MessageParser
from ventascom.processing_service import MessageProcessingService
from ventascom.refinement import OrderRefiner
from ventascom.sync_client import TaskMirrorClient
from ventascom.task_store import TaskStore

logger = logging.getLogger(__name__)

TASK_PATH = re.compile(r'^/tasks/([^/]+)(/groups|/commit)?$')


class OrderAgent:
    def __init__(self, config):
        self.config = config
        self.store = TaskStore(config.db_path)

        if config.supabase_url:
            self.catalog = CatalogClient(config.supabase_url, api_key=config.supabase_key)
            mirror = TaskMirrorClient(config.supabase_url, api_key=config.supabase_key)
        else:
            # Offline: catalog from file, no remote mirror
            self.catalog = StaticCatalog.from_file(config.catalog_path) if config.catalog_path else StaticCatalog()
            mirror = None

        self.text_client = None
        if config.gemini_api_key:
            self.text_client = GeminiClient(
                config.gemini_api_key,
                model_name=config.gemini_model,
                timeout=config.gemini_timeout_seconds,
            )
            self.text_client.on_connection_status_change(
                lambda status: logger.info(f"Gemini connection: {status}")
            )

        self.service = MessageProcessingService(
            self.store,
            mirror=mirror,
            parser=MessageParser(config.tolerate_typos, config.detect_partial_names),
            refiner=OrderRefiner(
                self.text_client,
                temperature=config.gemini_temperature,
                max_output_tokens=config.gemini_max_output_tokens,
            ),
            retention_seconds=config.retention_seconds,
            sync_policy=config.sync_policy,
            fetch_limit=config.remote_fetch_limit,
        )
        self.service.subscribe_all(self._on_task_update)

    def _on_task_update(self, task):
        logger.debug(f"Task {task.id}: {task.stage} ({task.progress}%)")

    def start(self):
        logger.info("VentasCom Order Agent starting...")
        self.service.start()
        if self.service.mirror is not None:
            self.service.start_periodic_sync(self.config.sync_interval_seconds)

    def stop(self):
        self.service.stop()

    def process(self, message: str) -> str:
        clients = self.catalog.list_clients()
        products = self.catalog.list_products()
        return self.service.submit(message, clients, products)

    def commit(self, task_id: str, include_warnings: bool = True):
        task = self.service.get_task(task_id)
        if task is None or not task.is_terminal:
            return None
        groups = self.service.get_grouped_orders(task_id)
        report = commit_groups(self.catalog, groups, include_warnings=include_warnings)
        if report['saved'] and not report['skipped']:
            self.service.clear_task(task_id)
        return report

    def get_status(self):
        status = self.service.get_status()
        status['recovery'] = self.service.recovery.get_recovery_status()
        status['catalog'] = type(self.catalog).__name__
        return status


def group_payload(group):
    return {
        'client_key': group.client_key,
        'client_name': group.client_name,
        'client_match': group.client_match.to_dict() if group.client_match else None,
        'status': group.status,
        'items': [item.to_dict() for item in group.items],
    }


agent = None

HTML = """
<!DOCTYPE html>
<html>
<head>
    <title>VentasCom Order Agent</title>
    <meta charset="utf-8">
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <style>
        body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;
               max-width: 800px; margin: 0 auto; padding: 20px; background: #f5f5f5; }
        .card { background: white; padding: 20px; border-radius: 10px; margin-bottom: 20px; box-shadow: 0 2px 5px rgba(0,0,0,0.1); }
        textarea { width: 100%; min-height: 100px; font-size: 15px; }
        button { background: #007bff; color: white; border: none; padding: 10px 20px;
                 border-radius: 5px; cursor: pointer; font-size: 15px; margin: 5px 0; }
        table { width: 100%; border-collapse: collapse; }
        th, td { padding: 8px; text-align: left; border-bottom: 1px solid #ddd; }
        .valid { color: #155724; } .warning { color: #856404; } .error { color: #721c24; }
    </style>
</head>
<body>
    <h1>VentasCom Order Agent</h1>

    <div class="card">
        <h2>Mensaje</h2>
        <textarea id="message" placeholder="Daniel 2 kilos papas, Carlos 5 aceite"></textarea>
        <button onclick="processMessage()">Procesar</button>
        <button onclick="syncNow()">Sincronizar</button>
    </div>

    <div class="card">
        <h2>Tareas</h2>
        <div id="tasks">Cargando...</div>
    </div>

    <script>
        function processMessage() {
            fetch('/process', {method: 'POST', body: JSON.stringify({message: document.getElementById('message').value})})
                .then(r => r.json()).then(loadTasks);
        }

        function syncNow() {
            fetch('/sync', {method: 'POST'}).then(loadTasks);
        }

        function cell(row, text) {
            const td = document.createElement('td');
            td.textContent = text;
            row.appendChild(td);
            return td;
        }

        function loadTasks() {
            fetch('/tasks').then(r => r.json()).then(tasks => {
                const container = document.getElementById('tasks');
                container.replaceChildren();
                if (tasks.length === 0) {
                    const empty = document.createElement('p');
                    empty.textContent = 'Sin tareas.';
                    container.appendChild(empty);
                    return;
                }
                const table = document.createElement('table');
                const header = table.insertRow();
                ['Mensaje', 'Etapa', '%', 'Items'].forEach(title => {
                    const th = document.createElement('th');
                    th.textContent = title;
                    header.appendChild(th);
                });
                tasks.forEach(t => {
                    const row = table.insertRow();
                    cell(row, t.message);
                    cell(row, t.stage);
                    cell(row, t.progress);
                    const items = cell(row, '');
                    (t.result || []).forEach(i => {
                        const line = document.createElement('div');
                        line.className = i.status;
                        line.textContent = i.client_name + ': ' + i.quantity + ' ' + (i.product_name || '?') + ' ' + (i.variant_hint || '');
                        items.appendChild(line);
                    });
                });
                container.appendChild(table);
            });
        }

        loadTasks();
        setInterval(loadTasks, 2000);
    </script>
</body>
</html>
"""


class Handler(SimpleHTTPRequestHandler):
    def _send_json(self, data, status=200):
        body = json.dumps(data, ensure_ascii=False, default=str).encode('utf-8')
        self.send_response(status)
        self.send_header('Content-type', 'application/json; charset=utf-8')
        self.send_header('Content-Length', str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _read_json(self):
        length = int(self.headers.get('Content-Length') or 0)
        if not length:
            return {}
        return json.loads(self.rfile.read(length).decode('utf-8'))

    def do_GET(self):
        path = urlparse(self.path).path
        if path == '/':
            self.send_response(200)
            self.send_header('Content-type', 'text/html; charset=utf-8')
            self.end_headers()
            self.wfile.write(HTML.encode('utf-8'))
        elif path == '/status':
            self._send_json(agent.get_status())
        elif path == '/tasks':
            self._send_json([t.to_snapshot() for t in agent.service.list_tasks()])
        else:
            match = TASK_PATH.match(path)
            if not match or match.group(2) == '/commit':
                self._send_json({'error': 'not found'}, 404)
                return
            task_id, suffix = match.groups()
            task = agent.service.get_task(task_id)
            if task is None:
                self._send_json({'error': f'unknown task {task_id}'}, 404)
            elif suffix == '/groups':
                self._send_json([group_payload(g) for g in agent.service.get_grouped_orders(task_id)])
            else:
                self._send_json(task.to_snapshot())

    def do_POST(self):
        path = urlparse(self.path).path
        try:
            body = self._read_json()
        except (ValueError, UnicodeDecodeError):
            self._send_json({'error': 'invalid JSON body'}, 400)
            return

        if path == '/process':
            message = body.get('message') if isinstance(body, dict) else None
            if not isinstance(message, str) or not message.strip():
                self._send_json({'error': "'message' is required"}, 400)
                return
            task_id = agent.process(message)
            self._send_json({'task_id': task_id}, 202)
        elif path == '/sync':
            thread = agent.service.trigger_sync()
            thread.join(timeout=60)
            self._send_json({'synced': not thread.is_alive()})
        else:
            match = TASK_PATH.match(path)
            if not match or match.group(2) != '/commit':
                self._send_json({'error': 'not found'}, 404)
                return
            include_warnings = bool(body.get('include_warnings', True)) if isinstance(body, dict) else True
            report = agent.commit(match.group(1), include_warnings)
            if report is None:
                self._send_json({'error': 'task not found or still running'}, 409)
            else:
                self._send_json(report)

    def log_message(self, format, *args):
        pass


def main():
    global agent

    config = load_config()
    setup_logging(log_path=config.log_path)

    agent = OrderAgent(config)
    agent.start()

    server = HTTPServer(('', config.http_port), Handler)

    print("=" * 50)
    print("  VentasCom Order Agent")
    print("=" * 50)
    print(f"Web UI: http://localhost:{config.http_port}")
    print(f"Refinement: {'Gemini ' + config.gemini_model if agent.text_client else 'disabled'}")
    print(f"Mirror: {'Supabase' if agent.service.mirror else 'disabled'}")
    print("=" * 50)
    print("Press Ctrl+C to stop")

    try:
        server.serve_forever()
    except KeyboardInterrupt:
        print("\nStopping...")
    finally:
        agent.stop()
        server.server_close()


if __name__ == '__main__':
    main()
