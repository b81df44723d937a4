"""
Server-driven page responses.

A page is a component name plus props. Requests sent by the frontend carry
``X-Inertia`` and get the page object as JSON; a plain browser request gets a
small HTML shell holding the same object in ``data-page``. Props wrapped in
:func:`defer` are left out of the first load and fetched by a partial reload
naming them in ``X-Inertia-Partial-Data``.
"""
from flask import current_app, get_flashed_messages, jsonify, render_template_string, request, session

ERRORS_SESSION_KEY = 'errors'

SHELL = """<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <title>{{ title }}</title>
</head>
<body>
  <div id="app" data-page="{{ page_json }}"></div>
</body>
</html>
"""


class DeferredProp:
    def __init__(self, resolver, group='default'):
        self.resolver = resolver
        self.group = group

    def __call__(self):
        return self.resolver()


def defer(resolver, group='default'):
    """Mark a prop to be loaded after the page first renders."""
    return DeferredProp(resolver, group)


def _requested_props(component):
    if request.headers.get('X-Inertia-Partial-Component') != component:
        return None
    names = request.headers.get('X-Inertia-Partial-Data', '')
    return {name.strip() for name in names.split(',') if name.strip()}


def _shared_props():
    # category -> messages, in the order they were flashed
    flashes = {}
    for category, message in get_flashed_messages(with_categories=True):
        flashes.setdefault(category, []).append(message)
    return {
        'flash': flashes,
        'errors': session.pop(ERRORS_SESSION_KEY, {}),
    }


def build_page(component, props):
    """Resolve the props this request needs and wrap them in a page object."""
    requested = _requested_props(component)
    resolved = {}
    deferred = {}
    for name, value in props.items():
        if requested is not None:
            if name not in requested:
                continue
            resolved[name] = value() if callable(value) else value
        elif isinstance(value, DeferredProp):
            deferred.setdefault(value.group, []).append(name)
        else:
            resolved[name] = value() if callable(value) else value
    resolved.update(_shared_props())

    page = {
        'component': component,
        'props': resolved,
        'url': request.full_path.rstrip('?'),
        'version': current_app.config['ASSET_VERSION'],
    }
    if deferred:
        page['deferredProps'] = deferred
    return page


def render_page(component, **props):
    page = build_page(component, props)
    if request.headers.get('X-Inertia'):
        response = jsonify(page)
        response.headers['X-Inertia'] = 'true'
        response.headers['Vary'] = 'X-Inertia'
        return response
    return render_template_string(
        SHELL,
        title=current_app.config['SHOP_NAME'],
        page_json=current_app.json.dumps(page),
    )
