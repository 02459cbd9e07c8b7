"""Constrained JavaScript execution for embed page scripts.

The sandbox gives page scripts just enough of a browser to run their
decoding routines (window, document, navigator, location, timers,
atob/btoa) and replaces ``eval`` with a version that records every string it
is handed before executing it. Decoders for packed/obfuscated players end
with ``eval(decoded)``, so the recorded strings hold the real player config.
"""
import re
import sys
import json
import time
import base64
import logging
from urllib.parse import urlparse

import js2py

from .config import DEFAULT_USER_AGENT
from .errors import ScriptError, ScriptTimeout

logger = logging.getLogger(__name__)

IDENTIFIER = re.compile(r'^[A-Za-z_$][\w$]*$')

# ES5 only: the interpreter has no Proxy, arrow functions or Promise.
PRELUDE = r'''
var window = (function () { return this; })() || {};
var self = window, top = window, parent = window, frames = window, globalThis = window;
var __noop = function () {};

var __nativeEval = eval;
eval = function (code) {
    if (typeof code !== 'string') {
        return code;
    }
    __sbRecord(code);
    try {
        return __nativeEval(code);
    } catch (e) {
        return undefined;
    }
};
window.eval = eval;

var __runOnce = function (fn) {
    var extra = Array.prototype.slice.call(arguments, 2);
    try {
        if (typeof fn === 'function') {
            fn.apply(window, extra);
        } else if (typeof fn === 'string') {
            eval(fn);
        }
    } catch (e) {}
    return 1;
};
var setTimeout = __runOnce, setInterval = __runOnce, setImmediate = __runOnce;
var clearTimeout = __noop, clearInterval = __noop;
var requestAnimationFrame = function (fn) { return __runOnce(fn); };
var cancelAnimationFrame = __noop;

var addEventListener = __noop, removeEventListener = __noop, dispatchEvent = __noop;
var postMessage = __noop, open = __noop, close = __noop, focus = __noop, blur = __noop, scrollTo = __noop;
var alert = __noop, confirm = function () { return false; }, prompt = function () { return null; };

var console = {log: __noop, error: __noop, warn: __noop, info: __noop, debug: __noop, trace: __noop,
               dir: __noop, time: __noop, timeEnd: __noop, group: __noop, groupEnd: __noop};

var location = __sbLocation;
location.replace = __noop;
location.assign = __noop;
location.reload = __noop;
location.toString = function () { return location.href; };

var navigator = {
    userAgent: __sbUserAgent, appVersion: __sbUserAgent, language: 'en-US', languages: ['en-US'],
    platform: 'Win32', vendor: 'Google Inc.', maxTouchPoints: 0, hardwareConcurrency: 8,
    deviceMemory: 8, cookieEnabled: true, onLine: true, connection: {effectiveType: '4g'},
    plugins: [], mimeTypes: [], webdriver: false
};
var history = {length: 1, pushState: __noop, replaceState: __noop, back: __noop};
var screen = {width: 1920, height: 1080, availWidth: 1920, availHeight: 1040, colorDepth: 24};
var innerWidth = 1920, innerHeight = 1080, outerWidth = 1920, outerHeight = 1080, devicePixelRatio = 1;
var performance = {now: function () { return new Date().getTime(); }, mark: __noop, measure: __noop};
var crypto = {getRandomValues: function (arr) {
    for (var i = 0; i < arr.length; i++) { arr[i] = Math.floor(Math.random() * 256); }
    return arr;
}};
var localStorage = {getItem: function () { return null; }, setItem: __noop, removeItem: __noop, clear: __noop, length: 0};
var sessionStorage = localStorage;

var __thenable = {then: function () { return __thenable; }, 'catch': function () { return __thenable; }};
var fetch = function () { return __thenable; };
var XMLHttpRequest = function () {
    this.readyState = 4; this.status = 200; this.responseText = '{}'; this.response = '{}';
    this.onload = null; this.onerror = null; this.onreadystatechange = null;
};
XMLHttpRequest.prototype.open = __noop;
XMLHttpRequest.prototype.send = __noop;
XMLHttpRequest.prototype.abort = __noop;
XMLHttpRequest.prototype.setRequestHeader = __noop;
XMLHttpRequest.prototype.addEventListener = __noop;
XMLHttpRequest.prototype.getAllResponseHeaders = function () { return ''; };
XMLHttpRequest.prototype.getResponseHeader = function () { return null; };

var __observer = function () { this.observe = __noop; this.disconnect = __noop; this.unobserve = __noop; };
var MutationObserver = __observer, ResizeObserver = __observer, IntersectionObserver = __observer;
var Image = function () { this.src = ''; this.addEventListener = __noop; this.removeEventListener = __noop; };
var Audio = function () { this.src = ''; this.addEventListener = __noop; this.pause = __noop; this.play = function () { return __thenable; }; };
var Event = function (name) { this.type = name; }, CustomEvent = Event;
var MediaSource = function () { this.addEventListener = __noop; };
MediaSource.isTypeSupported = function () { return true; };

var getComputedStyle = function () { return {getPropertyValue: function () { return '0px'; }}; };
var matchMedia = function () { return {matches: false, addEventListener: __noop, addListener: __noop}; };

var __element = function () {
    return {
        style: {}, children: [], childNodes: [], dataset: {},
        src: '', href: '', textContent: '', innerHTML: '', innerText: '', parentNode: null, nextSibling: null,
        setAttribute: __noop, getAttribute: function () { return null; }, removeAttribute: __noop,
        appendChild: function (child) { return child; }, removeChild: __noop, insertBefore: __noop,
        addEventListener: __noop, removeEventListener: __noop,
        classList: {add: __noop, remove: __noop, toggle: __noop, contains: function () { return false; }},
        getBoundingClientRect: function () { return {top: 0, left: 0, right: 0, bottom: 0, width: 0, height: 0}; },
        getContext: function () {
            return {fillRect: __noop, fillText: __noop, measureText: function () { return {width: 0}; },
                    getImageData: function () { return {data: [0, 0, 0, 0]}; },
                    arc: __noop, fill: __noop, beginPath: __noop, closePath: __noop,
                    canvas: {toDataURL: function () { return 'data:,'; }}};
        },
        toDataURL: function () { return 'data:,'; }
    };
};
var document = {
    createElement: __element, createElementNS: __element,
    createDocumentFragment: function () { return {appendChild: __noop, children: []}; },
    createTextNode: function () { return {}; },
    createEvent: function () { return {initEvent: __noop}; },
    getElementById: function () { return null; },
    querySelector: function () { return null; },
    querySelectorAll: function () { return []; },
    getElementsByTagName: function () { return []; },
    getElementsByClassName: function () { return []; },
    addEventListener: __noop, removeEventListener: __noop,
    write: __noop, writeln: __noop,
    head: {appendChild: function (child) { return child; }},
    body: {appendChild: function (child) { return child; }, style: {}},
    documentElement: {style: {}, classList: {add: __noop, remove: __noop}},
    cookie: '', referrer: '', domain: location.hostname, URL: location.href,
    readyState: 'complete', hidden: false, visibilityState: 'visible',
    location: location
};
window.document = document;
window.location = location;
window.navigator = navigator;
'''


def _atob(data):
    text = re.sub(r'\s+', '', str(data))
    text += '=' * (-len(text) % 4)
    return base64.b64decode(text).decode('latin-1')


def _btoa(data):
    return base64.b64encode(str(data).encode('latin-1')).decode('ascii')


def _location(url):
    parsed = urlparse(url)
    return {
        'href': url,
        'protocol': (parsed.scheme or 'https') + ':',
        'host': parsed.netloc,
        'hostname': parsed.hostname or '',
        'port': str(parsed.port or ''),
        'origin': f"{parsed.scheme}://{parsed.netloc}",
        'pathname': parsed.path or '/',
        'search': f"?{parsed.query}" if parsed.query else '',
        'hash': f"#{parsed.fragment}" if parsed.fragment else '',
    }


class _Budget:
    """Abort Python-level execution in the current thread once a deadline passes."""

    def __init__(self, seconds):
        self.seconds = seconds
        self.deadline = None
        self._previous = None

    def _trace(self, frame, event, arg):
        if time.monotonic() > self.deadline:
            raise ScriptTimeout(f"script exceeded {self.seconds:.1f}s budget")
        return self._trace

    def __enter__(self):
        self.deadline = time.monotonic() + self.seconds
        self._previous = sys.gettrace()
        sys.settrace(self._trace)
        return self

    def __exit__(self, exc_type, exc, tb):
        sys.settrace(self._previous)
        return False


class ScriptSandbox:
    """One isolated JavaScript global scope, with a recording ``eval``.

    ``execute`` runs a script under a wall-clock budget and returns the
    strings passed to ``eval`` while it ran; ``evaluations`` accumulates them
    across calls.
    """

    def __init__(self, location_url='about:blank', user_agent=DEFAULT_USER_AGENT, timeout=10.0):
        self.timeout = timeout
        self.evaluations = []

        def record(code):
            self.evaluations.append(str(code))

        self._context = js2py.EvalJs({
            '__sbRecord': record,
            '__sbUserAgent': user_agent,
            '__sbLocation': _location(location_url),
            'atob': _atob,
            'btoa': _btoa,
        })
        self.execute(PRELUDE)

    def execute(self, script, timeout=None):
        start = len(self.evaluations)
        try:
            with _Budget(timeout or self.timeout):
                self._context.execute(script)
        except ScriptTimeout:
            raise
        except Exception as e:
            raise ScriptError(str(e)[:300]) from e
        return self.evaluations[start:]

    def is_function(self, name):
        if not IDENTIFIER.match(name or ''):
            return False
        try:
            with _Budget(self.timeout):
                return self._context.eval(f"typeof {name}") == 'function'
        except Exception as e:
            logger.debug(f"typeof {name} failed: {e}")
            return False

    def evaluate_literal(self, literal, timeout=None):
        """Evaluate a JavaScript object literal and return it as plain Python data."""
        try:
            with _Budget(timeout or self.timeout):
                encoded = self._context.eval(f"JSON.stringify(({literal}))")
        except ScriptTimeout:
            raise
        except Exception as e:
            raise ScriptError(str(e)[:300]) from e
        if not isinstance(encoded, str):
            raise ScriptError('literal did not evaluate to a JSON-serialisable value')
        return json.loads(encoded)
