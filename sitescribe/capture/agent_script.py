"""The in-page agent evaluated inside captured pages.

The agent answers tagged requests (``{"ok": true, "result": ...}`` or
``{"ok": false, "error": {...}}``) and reports mutation and scroll events
through the ``__sitescribeEmit`` binding exposed by the host.
"""

AGENT_GLOBAL = "__sitescribeAgent"
EVENT_BINDING = "__sitescribeEmit"

IS_INJECTED_EXPRESSION = f"() => Boolean(window.{AGENT_GLOBAL} && window.{AGENT_GLOBAL}.injected)"

DISPATCH_EXPRESSION = f"""
async (message) => {{
  const agent = window.{AGENT_GLOBAL};
  if (!agent) {{
    return {{ ok: false, error: {{ name: 'NoAgent', message: 'Agent not injected' }} }};
  }}
  return await agent.handle(message);
}}
"""

AGENT_SCRIPT = """
(() => {
  if (window.%(agent)s && window.%(agent)s.injected) {
    return true;
  }

  const networkRequests = [];
  let observer = null;
  let pageHeight = 0;

  function emit(event) {
    if (typeof window.%(binding)s === 'function') {
      try {
        window.%(binding)s(event);
      } catch (e) {
        /* host went away */
      }
    }
  }

  function recordRequest(request) {
    networkRequests.push(request);
    if (networkRequests.length > 1000) {
      networkRequests.shift();
    }
  }

  const originalFetch = window.fetch;
  if (originalFetch) {
    window.fetch = async function (...args) {
      const input = args[0];
      const request = {
        type: 'fetch',
        url: typeof input === 'string' ? input : input && input.url,
        method: (typeof input === 'string' ? args[1] && args[1].method : input && input.method) || 'GET',
        timestamp: new Date().toISOString()
      };
      try {
        const response = await originalFetch.apply(this, args);
        request.status = response.status;
        request.statusText = response.statusText;
        recordRequest(request);
        return response;
      } catch (error) {
        request.error = String(error && error.message || error);
        recordRequest(request);
        throw error;
      }
    };
  }

  const originalOpen = XMLHttpRequest.prototype.open;
  XMLHttpRequest.prototype.open = function (method, url) {
    const request = { type: 'xhr', url: String(url), method, timestamp: new Date().toISOString() };
    this.addEventListener('loadend', () => {
      request.status = this.status;
      request.statusText = this.statusText;
      recordRequest(request);
    });
    return originalOpen.apply(this, arguments);
  };

  function allRequests() {
    const seen = new Set(networkRequests.map(r => r.url));
    const resources = performance.getEntriesByType('resource')
      .filter(entry => !seen.has(entry.name))
      .map(entry => ({
        type: entry.initiatorType || 'resource',
        url: entry.name,
        method: 'GET',
        duration: entry.duration
      }));
    return resources.concat(networkRequests);
  }

  function apiEndpoints(requests) {
    const endpoints = new Map();
    for (const request of requests) {
      try {
        const url = new URL(request.url, location.href);
        if (url.pathname.includes('/api/') ||
            /\\/(v1|v2|v3)\\//.test(url.pathname) ||
            /\\.(json|xml)$/.test(url.pathname)) {
          endpoints.set(request.url, { url: request.url, method: request.method, type: request.type });
        }
      } catch (e) {
        /* unparsable URL */
      }
    }
    return Array.from(endpoints.values());
  }

  function scripts() {
    return Array.from(document.scripts).map(script => script.src
      ? { type: 'external', src: script.src, scriptType: script.type || 'text/javascript',
          async: script.async, defer: script.defer, content: null }
      : { type: 'inline', scriptType: script.type || 'text/javascript', content: script.textContent });
  }

  function meta(name) {
    const element = document.querySelector(`meta[name="${name}"], meta[property="${name}"]`);
    return element ? element.getAttribute('content') : null;
  }

  function prefixedMeta(prefix) {
    const result = {};
    document.querySelectorAll(`meta[property^="${prefix}"], meta[name^="${prefix}"]`).forEach(element => {
      const key = element.getAttribute('property') || element.getAttribute('name');
      result[key.slice(prefix.length)] = element.getAttribute('content');
    });
    return result;
  }

  function wordCount() {
    const text = (document.body && document.body.innerText || '').trim();
    return text ? text.split(/\\s+/).length : 0;
  }

  function performanceMetrics() {
    const resourceCount = performance.getEntriesByType('resource').length;
    const navigation = performance.getEntriesByType('navigation')[0];
    if (!navigation) {
      return { loadTime: null, domContentLoaded: null, firstPaint: null, resourceCount };
    }
    const since = value => (value > 0 ? value - navigation.startTime : null);
    const paints = {};
    performance.getEntriesByType('paint').forEach(entry => {
      paints[entry.name] = entry.startTime;
    });
    return {
      loadTime: since(navigation.loadEventEnd),
      domInteractive: since(navigation.domInteractive),
      domContentLoaded: since(navigation.domContentLoadedEventEnd),
      pageLoadComplete: since(navigation.loadEventEnd),
      ttfb: since(navigation.responseStart),
      firstPaint: paints['first-paint'] ?? null,
      firstContentfulPaint: paints['first-contentful-paint'] ?? null,
      resourceCount
    };
  }

  function headingList() {
    return Array.from(document.querySelectorAll('h1,h2,h3,h4,h5,h6')).map(h => ({
      level: parseInt(h.tagName[1], 10),
      text: h.textContent.trim(),
      id: h.id || null
    }));
  }

  function pageStructure() {
    return {
      headings: headingList(),
      sections: Array.from(document.querySelectorAll('section, article, main, div[role="main"]')).map(s => ({
        role: s.getAttribute('role') || s.tagName.toLowerCase(),
        id: s.id || null,
        className: typeof s.className === 'string' ? s.className : ''
      }))
    };
  }

  function resourceInfo() {
    return {
      images: Array.from(document.images).map(img => ({
        src: img.src,
        alt: img.alt,
        dimensions: `${img.naturalWidth}x${img.naturalHeight}`
      })),
      links: Array.from(document.links).map(link => ({
        href: link.href,
        text: link.textContent.trim(),
        isExternal: link.hostname !== location.hostname
      })),
      scripts: Array.from(document.scripts).map(script => ({
        src: script.src || 'inline',
        type: script.type || 'text/javascript',
        async: script.async,
        defer: script.defer
      }))
    };
  }

  function snippetContext(element) {
    let current = element.closest('pre') || element;
    while ((current = current.previousElementSibling)) {
      if (current.matches('h1,h2,h3,h4,h5,h6')) {
        return current.textContent.trim().slice(0, 200);
      }
    }
    return '';
  }

  function codeSnippets() {
    const blocks = Array.from(document.querySelectorAll('pre, code'));
    // A <pre> wrapping a <code> is reported once, through the <code>
    return blocks
      .filter(block => !(block.tagName === 'PRE' && block.querySelector(':scope > code')))
      .map((block, index) => {
        const match = (block.getAttribute('class') || '').match(/language-(\\w+)/);
        return {
          id: `snippet-${index}`,
          language: (match && match[1]) || block.getAttribute('data-language') || 'text',
          code: block.textContent.trim(),
          context: snippetContext(block)
        };
      });
  }

  function metadata(options) {
    const words = wordCount();
    const requests = allRequests();
    const canonical = document.querySelector('link[rel="canonical"]');
    return {
      title: document.title,
      description: meta('description'),
      keywords: meta('keywords'),
      author: meta('author'),
      publishedTime: meta('article:published_time'),
      modifiedTime: meta('article:modified_time'),
      language: document.documentElement.lang || navigator.language,
      canonicalUrl: canonical ? canonical.href : null,
      wordCount: words,
      readingTime: Math.ceil(words / 200),
      openGraph: prefixedMeta('og:'),
      twitter: prefixedMeta('twitter:'),
      headings: headingList(),
      pageStructure: pageStructure(),
      resourceInfo: resourceInfo(),
      codeSnippets: codeSnippets(),
      performance: performanceMetrics(),
      scripts: options.captureScripts === false ? [] : scripts(),
      networkRequests: options.captureNetworkRequests === false
        ? [] : requests.slice(-(options.maxNetworkRequests || 100)),
      apiEndpoints: options.captureNetworkRequests === false ? [] : apiEndpoints(requests)
    };
  }

  function markdown(data) {
    const root = document.querySelector('main') || document.querySelector('article') ||
                 document.querySelector('.content') || document.body;
    const lines = ['# ' + data.title, '', '## Metadata', '', '- **URL**: ' + location.href,
                   '- **Language**: ' + data.language];
    if (data.description) lines.push('- **Description**: ' + data.description);
    if (data.author) lines.push('- **Author**: ' + data.author);
    if (data.publishedTime) lines.push('- **Published**: ' + data.publishedTime);
    if (data.modifiedTime) lines.push('- **Modified**: ' + data.modifiedTime);
    lines.push('');

    root.querySelectorAll('h1, h2, h3, h4, h5, h6').forEach(heading => {
      lines.push('', '#'.repeat(parseInt(heading.tagName[1], 10)) + ' ' + heading.textContent.trim(), '');
      let next = heading.nextElementSibling;
      while (next && !next.matches('h1, h2, h3, h4, h5, h6')) {
        if (next.matches('p')) lines.push(next.textContent.trim(), '');
        next = next.nextElementSibling;
      }
    });

    const links = new Map();
    root.querySelectorAll('a[href]').forEach(link => {
      const text = link.textContent.trim();
      if (text && !links.has(link.href)) links.set(link.href, text);
    });
    if (links.size) {
      lines.push('', '## Referenced Links', '');
      links.forEach((text, href) => lines.push(`- [${text}](${href})`));
    }

    const images = new Map();
    root.querySelectorAll('img[src]').forEach(img => {
      if (!images.has(img.src)) images.set(img.src, img.alt || 'No description available');
    });
    if (images.size) {
      lines.push('', '## Images', '');
      images.forEach((alt, src) => lines.push(`![${alt}](${src})`));
    }
    return lines.join('\\n');
  }

  function dimensions() {
    const root = document.documentElement;
    return {
      width: Math.max(root.scrollWidth, root.offsetWidth, root.clientWidth),
      height: Math.max(root.scrollHeight, root.offsetHeight, root.clientHeight),
      viewportHeight: window.innerHeight,
      scrollY: window.scrollY
    };
  }

  function cleanHTML() {
    const clone = document.documentElement.cloneNode(true);
    clone.querySelectorAll('script, style').forEach(element => element.remove());
    return clone.outerHTML;
  }

  function readable() {
    const candidates = Array.from(document.querySelectorAll('article, main, [role="main"], .content, #content'));
    let best = null;
    for (const candidate of candidates) {
      const length = (candidate.innerText || '').trim().length;
      if (length > 0 && (!best || length > best.length)) best = { node: candidate, length };
    }
    if (!best) return 'No readable content found';
    return `# ${document.title}\\n\\n${best.node.innerText.trim()}`;
  }

  function observe() {
    if (observer) return true;
    pageHeight = dimensions().height;
    observer = new MutationObserver(mutations => {
      const significant = mutations.some(mutation =>
        (mutation.type === 'childList' && (mutation.addedNodes.length || mutation.removedNodes.length)) ||
        (mutation.type === 'attributes' && mutation.target.matches &&
         mutation.target.matches('img, video, iframe, article, section')));
      if (significant) {
        emit({ action: 'contentChanged', timestamp: Date.now() });
      }
      const height = dimensions().height;
      if (height !== pageHeight) {
        pageHeight = height;
        emit({ action: 'pageHeightChanged', height });
      }
    });
    observer.observe(document.documentElement, { childList: true, subtree: true, attributes: true });
    window.addEventListener('scroll', () => emit({ action: 'scrollPositionChanged', position: window.scrollY }));
    return true;
  }

  async function scrollTo(position) {
    window.scrollTo({ top: position, behavior: 'instant' });
    await new Promise(resolve => setTimeout(resolve, 100));
    return { success: true };
  }

  const handlers = {
    ping: () => 'pong',
    observe: () => observe(),
    scrollTo: message => scrollTo(Number(message.position) || 0),
    getPageDimensions: () => dimensions(),
    getContent: message => {
      const data = metadata(message);
      return { content: markdown(data), metadata: data };
    },
    getHTML: () => cleanHTML(),
    getText: () => (document.querySelector('article') || document.body).innerText,
    getReadableContent: () => readable()
  };

  window.%(agent)s = {
    injected: true,
    async handle(message) {
      const handler = handlers[message && message.action];
      if (!handler) {
        return { ok: false, error: { name: 'UnknownAction', message: 'Unknown action: ' + (message && message.action) } };
      }
      try {
        return { ok: true, result: await handler(message) };
      } catch (error) {
        return { ok: false, error: { name: error.name || 'Error', message: String(error.message || error) } };
      }
    }
  };

  emit({ action: 'contentReady' });
  return true;
})()
""" % {"agent": AGENT_GLOBAL, "binding": EVENT_BINDING}
