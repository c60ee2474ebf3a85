"""Browser side of the live-update channel.

Served at ``/__perch/live/client.js`` and referenced from every page
rendered in development mode. The script tag carries the page's build
entry and hash as data attributes::

    <script data-perch="live" data-entry="view/page.html" data-hash="..."
            src="/__perch/live/client.js"></script>

The client opens an ``EventSource``, subscribes to its entry, and then:

- ``patch``: re-fetches the page, swaps ``<body>``, and acks the hash
- ``reload``: reloads the page
- ``error``: shows a dismissible diagnostic banner
"""

from html import escape

LIVE_CLIENT_PATH = "/__perch/live/client.js"

LIVE_CLIENT_JS = """\
(function(){
  if(window.__perchLive)return;
  var script=document.currentScript;
  var base=script.dataset.base||"";
  var entry=script.dataset.entry;
  var id=(window.crypto&&crypto.randomUUID)?crypto.randomUUID():String(Math.random()).slice(2);
  window.__perchLive={client:id,entry:entry,hash:script.dataset.hash};
  function post(path,body){
    return fetch(base+"/__perch/live/"+path,{
      method:"POST",headers:{"content-type":"application/json"},body:JSON.stringify(body)
    });
  }
  function clearBanner(){
    var el=document.getElementById("__perch_error");
    if(el)el.remove();
  }
  function showBanner(d){
    clearBanner();
    var el=document.createElement("pre");
    el.id="__perch_error";
    el.style.cssText="position:fixed;left:0;right:0;bottom:0;margin:0;padding:1rem;"+
      "background:#1a1a2e;color:#f87171;font:13px monospace;z-index:2147483647;"+
      "white-space:pre-wrap;border-top:3px solid #f87171;cursor:pointer";
    var where=d.file?(d.file+(d.line?":"+d.line:"")+"\\n"):"";
    el.textContent="perch: "+(d.kind||"error")+" error\\n"+where+(d.message||"");
    el.onclick=clearBanner;
    document.body.appendChild(el);
  }
  var source=new EventSource(base+"/__perch/live/events?client="+encodeURIComponent(id));
  source.addEventListener("open",function(){post("subscribe",{client:id,entries:[entry]});});
  source.addEventListener("patch",function(evt){
    var msg=JSON.parse(evt.data);
    fetch(location.href,{headers:{"x-perch-patch":"1"}}).then(function(r){return r.text();})
      .then(function(html){
        var doc=new DOMParser().parseFromString(html,"text/html");
        document.body.replaceWith(doc.body);
        window.__perchLive.hash=msg.hash;
        return post("ack",{client:id,entry:msg.entry,hash:msg.hash});
      });
  });
  source.addEventListener("reload",function(){location.reload();});
  source.addEventListener("error",function(evt){
    if(!evt.data)return;
    showBanner(JSON.parse(evt.data).diagnostic||{});
  });
})();
"""


def live_client_tag(entry: str, digest: str, *, base: str = "") -> str:
    """The ``<script>`` tag injected into development pages."""
    attrs = f'data-perch="live" data-entry="{escape(entry)}" data-hash="{escape(digest)}"'
    if base:
        attrs += f' data-base="{escape(base)}"'
    return f'<script {attrs} src="{escape(base)}{LIVE_CLIENT_PATH}"></script>'
