from kr8s.asyncio.objects import new_class

CiliumNode = new_class(
    kind="CiliumNode",
    version="cilium.io/v2",
    namespaced=False,
    plural="ciliumnodes",
)
