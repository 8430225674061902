#!/usr/bin/env python3
"""
Landholdings - Servidor de Tiles e API
Serve os vector tiles de propriedades e controla o run de agregação.

ROTAS:
------
GET  /tiles/<z>/<x>/<y>.mvt[?mode=hybrid]   Vector tile (204 se vazio)
GET  /api/parcels/aggregated?minLon&minLat&maxLon&maxLat[&limit]
GET  /api/tiles/stats                        Estatísticas do cache
POST /api/tiles/clear-cache                  Limpa o cache de tiles
POST /api/aggregation/run                    Inicia o run em background
GET  /api/aggregation/status                 Progresso do run
"""

import os
import sys
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional

from flask import Flask, Response, jsonify, request
from loguru import logger
from shapely.geometry import mapping

from landholdings.aggregation.checkpoint import PostgisCheckpointStore
from landholdings.aggregation.runner import AggregationRunner
from landholdings.aggregation.store import AggregationStore, PostgisAggregationStore
from landholdings.errors import (
    InvalidTileError,
    StoreUnavailableError,
    TileGenerationError,
)
from landholdings.models import AggregationSettings, RunMode, load_settings
from landholdings.tiles.generator import TileGenerator

TILE_CACHE_CONTROL = 'public, max-age=3600'
DEFAULT_BOUNDS_LIMIT = 1000
MAX_BOUNDS_LIMIT = 10000


def create_app(
    store: Optional[AggregationStore] = None,
    settings: Optional[AggregationSettings] = None,
    generator: Optional[TileGenerator] = None,
    runner: Optional[AggregationRunner] = None,
    start_sweeper: bool = True,
) -> Flask:
    """
    Monta a aplicação Flask.

    Args:
        store: Store de parcelas/clusters (default: PostGIS)
        settings: Configuração (default: config/aggregation.yaml)
        generator: TileGenerator pronto (default: montado a partir do store)
        runner: AggregationRunner pronto (default: PostGIS + checkpoint no banco)
        start_sweeper: Inicia a thread de limpeza do cache de tiles
    """
    settings = settings or load_settings()
    store = store or PostgisAggregationStore()
    generator = generator or TileGenerator(
        store,
        settings=settings.tiles,
        excluded_counties=settings.excluded_counties,
    )
    runner = runner or AggregationRunner(store, PostgisCheckpointStore(), settings=settings)

    if start_sweeper and settings.tiles.sweep_interval_seconds:
        generator.cache.start_sweeper(settings.tiles.sweep_interval_seconds)

    app = Flask(__name__)
    app.config['PROPAGATE_EXCEPTIONS'] = False

    # Estado do run disparado pela API
    run_state = {
        'running': False,
        'started_at': None,
        'last_report': None,
        'last_error': None,
        'logs': [],
    }
    state_lock = threading.Lock()

    app.extensions['landholdings'] = {
        'store': store,
        'settings': settings,
        'generator': generator,
        'runner': runner,
        'run_state': run_state,
        'state_lock': state_lock,
    }

    def add_log(message: str, level: str = 'info'):
        """Adiciona mensagem ao log do run."""
        with state_lock:
            run_state['logs'].append({
                'time': datetime.now().strftime('%H:%M:%S'),
                'level': level,
                'message': message,
            })
            # Manter apenas os últimos 100 logs
            if len(run_state['logs']) > 100:
                run_state['logs'] = run_state['logs'][-100:]

    @app.after_request
    def add_cors_headers(response):
        response.headers['Access-Control-Allow-Origin'] = '*'
        return response

    # ========================================================================
    # TILES
    # ========================================================================

    @app.route('/tiles/<z>/<x>/<y>.mvt')
    def tile(z, x, y):
        """Vector tile MVT."""
        try:
            z, x, y = int(z), int(x), int(y)
        except ValueError:
            return jsonify({'error': 'Invalid tile coordinates'}), 400

        mode = request.args.get('mode') or 'default'

        try:
            data = generator.render(z, x, y, mode)
        except (InvalidTileError, ValueError) as e:
            return jsonify({'error': str(e)}), 400
        except TileGenerationError as e:
            logger.error(f"❌ Erro ao gerar tile {z}/{x}/{y}: {e}")
            return jsonify({'error': 'Failed to generate tile'}), 500

        if data is None:
            return Response(status=204)

        response = Response(data, mimetype='application/x-protobuf')
        response.headers['Cache-Control'] = TILE_CACHE_CONTROL
        return response

    @app.route('/api/tiles/stats')
    def tile_stats():
        """Estatísticas do cache e do gerador."""
        return jsonify({
            'cache': generator.cache.stats(),
            'generator': dict(generator.stats),
            'zoom_threshold': generator.settings.zoom_threshold,
        })

    @app.route('/api/tiles/clear-cache', methods=['POST'])
    def clear_tile_cache():
        removed = generator.cache.clear()
        return jsonify({'status': 'ok', 'removed': removed})

    # ========================================================================
    # CLUSTERS (GeoJSON)
    # ========================================================================

    @app.route('/api/parcels/aggregated')
    def aggregated_parcels():
        """Clusters na bounding box, como GeoJSON FeatureCollection."""
        try:
            bounds = tuple(
                float(request.args[name])
                for name in ('minLon', 'minLat', 'maxLon', 'maxLat')
            )
        except KeyError:
            return jsonify({'error': 'Missing bounds: minLon, minLat, maxLon, maxLat'}), 400
        except ValueError:
            return jsonify({'error': 'Bounds must be numeric'}), 400

        if bounds[0] > bounds[2] or bounds[1] > bounds[3]:
            return jsonify({'error': 'Invalid bounds: min greater than max'}), 400

        try:
            limit = int(request.args.get('limit', DEFAULT_BOUNDS_LIMIT))
        except ValueError:
            return jsonify({'error': 'limit must be an integer'}), 400
        limit = max(1, min(limit, MAX_BOUNDS_LIMIT))

        try:
            clusters = store.clusters_in_bounds(
                bounds,
                excluded=settings.excluded_counties,
                limit=limit,
            )
        except StoreUnavailableError as e:
            logger.error(f"❌ Erro ao buscar clusters: {e}")
            return jsonify({'error': 'Failed to fetch aggregated parcels'}), 500

        features = [
            {
                'type': 'Feature',
                'id': c.id,
                'geometry': mapping(c.geometry),
                'properties': {
                    'owner': c.owner,
                    'parcel_count': c.parcel_count,
                    'total_acres': round(c.total_acres, 2),
                    'county': c.county,
                },
            }
            for c in clusters
            if c.geometry is not None
        ]
        return jsonify({'type': 'FeatureCollection', 'features': features})

    # ========================================================================
    # RUN DE AGREGAÇÃO
    # ========================================================================

    def run_aggregation(mode: RunMode, county: Optional[str]):
        """Executa o run em background."""
        add_log(f'🚀 Iniciando agregação ({mode.value}{" - " + county if county else ""})')
        try:
            report = runner.run(mode, county=county)
            summary = {
                'state': report.state.value,
                'counties': len(report.counties),
                'clusters': report.total_clusters,
                'parcels': report.total_parcels,
                'failed_counties': report.failed_counties,
                'elapsed_seconds': round(report.elapsed_seconds, 1),
                'eta_seconds': report.eta_seconds,
            }
            with state_lock:
                run_state['last_report'] = summary
            generator.cache.clear()

            if report.failed_counties:
                add_log(f'⚠️ Agregação terminou com {len(report.failed_counties)} condado(s) com erro', 'warning')
            else:
                add_log(f'✅ Agregação concluída: {report.total_clusters:,} clusters', 'success')

        except Exception as e:
            logger.exception(f"Run de agregação falhou: {e}")
            with state_lock:
                run_state['last_error'] = str(e)
            add_log(f'❌ Erro na agregação: {e}', 'error')

        finally:
            with state_lock:
                run_state['running'] = False

    @app.route('/api/aggregation/run', methods=['POST'])
    def start_aggregation():
        data = request.get_json(silent=True) or {}
        raw_mode = str(data.get('mode', RunMode.RESUME.value)).replace('-', '_')
        county = data.get('county') or None

        try:
            mode = RunMode(raw_mode)
        except ValueError:
            return jsonify({'error': f'Unknown mode: {raw_mode}'}), 400

        with state_lock:
            if run_state['running'] or runner.is_running:
                return jsonify({'error': 'Aggregation is already running'}), 400
            run_state['running'] = True
            run_state['started_at'] = datetime.now().isoformat()
            run_state['last_error'] = None

        thread = threading.Thread(target=run_aggregation, args=(mode, county))
        thread.daemon = True
        thread.start()

        return jsonify({'status': 'started', 'mode': mode.value, 'county': county}), 202

    @app.route('/api/aggregation/status')
    def aggregation_status():
        with state_lock:
            state = {
                'running': run_state['running'],
                'started_at': run_state['started_at'],
                'last_report': run_state['last_report'],
                'last_error': run_state['last_error'],
                'logs': run_state['logs'][-50:],
            }
        state['progress'] = runner.progress()
        return jsonify(state)

    return app


def setup_logging():
    """Configura logging para console e arquivo."""
    log_dir = Path(__file__).parent.parent.parent / "logs"
    log_dir.mkdir(exist_ok=True)

    logger.remove()
    logger.add(sys.stderr, level="INFO", colorize=True)
    logger.add(
        log_dir / "tile_server_{time:YYYY-MM-DD}.log",
        level="DEBUG",
        rotation="100 MB",
        retention="30 days",
    )


if __name__ == '__main__':
    setup_logging()
    port = int(os.getenv('PORT', '5000'))
    app = create_app()
    print()
    print("╔══════════════════════════════════════════════════════════╗")
    print("║       Landholdings - Tile Server                         ║")
    print(f"║       Acesse: http://localhost:{port:<26}║")
    print("╚══════════════════════════════════════════════════════════╝")
    print()
    app.run(debug=False, host='0.0.0.0', port=port, threaded=True)
