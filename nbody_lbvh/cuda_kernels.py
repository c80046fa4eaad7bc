"""
nbody_lbvh.cuda_kernels
CUDA source for the six pipeline stages, compiled as one module per precision.

Templates are formatted with the ``_TYPE_SPECS`` entries of ``gpu.py``
(``{T}`` is the float type, ``{SQRT}`` its square root), so literal braces
are doubled.

Buffer layout is shared with the Numba kernels: positions, velocities,
accelerations and node vectors are interleaved ``(x, y)`` pairs; internal
nodes occupy ``[0, n-1)`` and the leaf of sorted rank ``k`` is ``n-1+k``.
"""

# ============================================================================
# MORTON STAGE
# ============================================================================

_MORTON_KERNEL_TEMPLATE = r'''
#define META_CENTER_X 4
#define META_CENTER_Y 5
#define META_HALF_X 6
#define META_HALF_Y 7
#define MORTON_MAX 65535u

extern "C" __device__ __forceinline__
unsigned int expand_bits(unsigned int v) {{
    v &= 0x0000FFFFu;
    v = (v | (v << 8)) & 0x00FF00FFu;
    v = (v | (v << 4)) & 0x0F0F0F0Fu;
    v = (v | (v << 2)) & 0x33333333u;
    v = (v | (v << 1)) & 0x55555555u;
    return v;
}}

extern "C" __device__ __forceinline__
unsigned int quantize({T} x, {T} lo, {T} inv_extent) {{
    {T} u = (x - lo) * inv_extent;
    // NaN fails the comparison and clamps to 0
    if (!(u > ({T})0)) return 0u;
    if (u >= ({T})1) return MORTON_MAX;
    unsigned int q = (unsigned int)(u * ({T})(MORTON_MAX + 1u));
    return q < MORTON_MAX ? q : MORTON_MAX;
}}

extern "C" __global__
void morton_codes_kernel(
    const {T}* __restrict__ pos,
    const {T}* __restrict__ meta,
    unsigned int* __restrict__ codes,
    unsigned int* __restrict__ indices,
    int n)
{{
    int i = blockIdx.x * blockDim.x + threadIdx.x;
    if (i >= n) return;

    {T} half_x = meta[META_HALF_X];
    {T} half_y = meta[META_HALF_Y];
    {T} lo_x = meta[META_CENTER_X] - half_x;
    {T} lo_y = meta[META_CENTER_Y] - half_y;

    unsigned int qx = quantize(pos[2 * i], lo_x, ({T})0.5 / half_x);
    unsigned int qy = quantize(pos[2 * i + 1], lo_y, ({T})0.5 / half_y);
    codes[i] = (expand_bits(qy) << 1) | expand_bits(qx);
    indices[i] = (unsigned int)i;
}}
'''

# ============================================================================
# BUILD STAGE (Karras 2012)
# ============================================================================

_BUILD_KERNEL_TEMPLATE = r'''
// Common prefix of the composite (code, index) keys at ranks i and j
extern "C" __device__ __forceinline__
int lbvh_delta(const unsigned int* __restrict__ codes,
               const unsigned int* __restrict__ indices,
               int i, int j, int n) {{
    if (j < 0 || j >= n) return -1;
    unsigned int ci = codes[i];
    unsigned int cj = codes[j];
    if (ci == cj) return 32 + __clz((int)(indices[i] ^ indices[j]));
    return __clz((int)(ci ^ cj));
}}

extern "C" __global__
void build_lbvh_kernel(
    const unsigned int* __restrict__ codes,
    const unsigned int* __restrict__ indices,
    int* __restrict__ left,
    int* __restrict__ right,
    int* __restrict__ parent,
    int n)
{{
    int i = blockIdx.x * blockDim.x + threadIdx.x;
    int n_internal = n - 1;
    if (i >= n_internal) return;
    if (i == 0) parent[0] = -1;

    int d = lbvh_delta(codes, indices, i, i + 1, n) > lbvh_delta(codes, indices, i, i - 1, n) ? 1 : -1;
    int delta_min = lbvh_delta(codes, indices, i, i - d, n);

    int l_max = 2;
    while (lbvh_delta(codes, indices, i, i + l_max * d, n) > delta_min) l_max *= 2;

    int l = 0;
    for (int t = l_max / 2; t >= 1; t /= 2) {{
        if (lbvh_delta(codes, indices, i, i + (l + t) * d, n) > delta_min) l += t;
    }}
    int j = i + l * d;

    int delta_node = lbvh_delta(codes, indices, i, j, n);
    int s = 0;
    int div = 2;
    int t = (l + div - 1) / div;
    while (true) {{
        if (lbvh_delta(codes, indices, i, i + (s + t) * d, n) > delta_node) s += t;
        if (t <= 1) break;
        div *= 2;
        t = (l + div - 1) / div;
    }}
    int gamma = i + s * d + min(d, 0);

    int lc = (min(i, j) == gamma) ? n_internal + gamma : gamma;
    int rc = (max(i, j) == gamma + 1) ? n_internal + gamma + 1 : gamma + 1;

    left[i] = lc;
    right[i] = rc;
    parent[lc] = i;
    parent[rc] = i;
}}
'''

# ============================================================================
# FILL STAGE
# ============================================================================

_FILL_KERNEL_TEMPLATE = r'''
extern "C" __global__
void fill_lbvh_kernel(
    const {T}* __restrict__ pos,
    const {T}* __restrict__ mass,
    const unsigned int* __restrict__ indices,
    const int* __restrict__ left,
    const int* __restrict__ right,
    const int* __restrict__ parent,
    unsigned int* ready,
    {T}* com,
    {T}* aabb_min,
    {T}* aabb_max,
    {T}* node_mass,
    {T}* length,
    int n)
{{
    int k = blockIdx.x * blockDim.x + threadIdx.x;
    if (k >= n) return;
    int n_internal = n - 1;
    int node = n_internal + k;
    unsigned int b = indices[k];

    {T} px = pos[2 * b];
    {T} py = pos[2 * b + 1];
    com[2 * node] = px;
    com[2 * node + 1] = py;
    aabb_min[2 * node] = px;
    aabb_min[2 * node + 1] = py;
    aabb_max[2 * node] = px;
    aabb_max[2 * node + 1] = py;
    node_mass[node] = mass[b];
    length[node] = ({T})0;

    // children written by other lanes must be read past the L1 cache
    volatile {T}* v_com = com;
    volatile {T}* v_min = aabb_min;
    volatile {T}* v_max = aabb_max;
    volatile {T}* v_mass = node_mass;

    int current = parent[node];
    while (current >= 0) {{
        __threadfence();
        unsigned int arrived = atomicAdd(&ready[current], 1u);
        if (arrived == 0u) return;  // sibling lane finishes this node

        int lc = left[current];
        int rc = right[current];
        {T} ml = v_mass[lc];
        {T} mr = v_mass[rc];
        {T} m = ml + mr;
        {T} cx, cy;
        if (m != ({T})0) {{
            cx = (ml * v_com[2 * lc] + mr * v_com[2 * rc]) / m;
            cy = (ml * v_com[2 * lc + 1] + mr * v_com[2 * rc + 1]) / m;
        }} else {{
            cx = ({T})0.5 * (v_com[2 * lc] + v_com[2 * rc]);
            cy = ({T})0.5 * (v_com[2 * lc + 1] + v_com[2 * rc + 1]);
        }}
        {T} min_x = fmin(v_min[2 * lc], v_min[2 * rc]);
        {T} min_y = fmin(v_min[2 * lc + 1], v_min[2 * rc + 1]);
        {T} max_x = fmax(v_max[2 * lc], v_max[2 * rc]);
        {T} max_y = fmax(v_max[2 * lc + 1], v_max[2 * rc + 1]);

        com[2 * current] = cx;
        com[2 * current + 1] = cy;
        aabb_min[2 * current] = min_x;
        aabb_min[2 * current + 1] = min_y;
        aabb_max[2 * current] = max_x;
        aabb_max[2 * current + 1] = max_y;
        node_mass[current] = m;
        {T} dx = max_x - min_x;
        {T} dy = max_y - min_y;
        length[current] = {SQRT}(dx * dx + dy * dy);

        current = parent[current];
    }}
}}
'''

# ============================================================================
# FORCE STAGE
# ============================================================================

_BH_FORCE_KERNEL_TEMPLATE = r'''
#define META_G 0
#define META_EPS 2
#define META_THETA 3
#define STACK_SIZE 128

extern "C" __global__
void bh_accelerations_kernel(
    const {T}* __restrict__ pos,
    const unsigned int* __restrict__ indices,
    const int* __restrict__ left,
    const int* __restrict__ right,
    const {T}* __restrict__ com,
    const {T}* __restrict__ node_mass,
    const {T}* __restrict__ length,
    const {T}* __restrict__ meta,
    {T}* __restrict__ acc,
    int n)
{{
    int k = blockIdx.x * blockDim.x + threadIdx.x;
    if (k >= n) return;
    int n_internal = n - 1;
    int own_leaf = n_internal + k;
    unsigned int b = indices[k];

    {T} G = meta[META_G];
    {T} eps2 = meta[META_EPS] * meta[META_EPS];
    {T} theta2 = meta[META_THETA] * meta[META_THETA];
    {T} px = pos[2 * b];
    {T} py = pos[2 * b + 1];
    {T} ax = ({T})0;
    {T} ay = ({T})0;

    int stack[STACK_SIZE];
    int top = 0;
    stack[top++] = 0;

    while (top > 0) {{
        int node = stack[--top];
        if (node == own_leaf) continue;

        {T} dx = com[2 * node] - px;
        {T} dy = com[2 * node + 1] - py;
        {T} d2 = dx * dx + dy * dy;

        bool accept = node >= n_internal;
        if (!accept) {{
            {T} s = length[node];
            if (s * s < theta2 * d2) {{
                accept = true;
            }} else if (top + 2 > STACK_SIZE) {{
                accept = true;  // corrupted topology only
            }} else {{
                stack[top++] = left[node];
                stack[top++] = right[node];
            }}
        }}

        if (accept) {{
            {T} r2 = d2 + eps2;
            if (r2 > ({T})0) {{
                {T} inv_r = ({T})1 / {SQRT}(r2);
                {T} f = G * node_mass[node] * inv_r * inv_r * inv_r;
                ax += f * dx;
                ay += f * dy;
            }}
        }}
    }}

    acc[2 * b] = ax;
    acc[2 * b + 1] = ay;
}}
'''

# ============================================================================
# INTEGRATION STAGE
# ============================================================================

_LEAPFROG_KERNEL_TEMPLATE = r'''
#define META_DT 1

extern "C" __global__
void leapfrog_kernel(
    {T}* __restrict__ pos,
    {T}* __restrict__ vel,
    const {T}* __restrict__ acc,
    const {T}* __restrict__ meta,
    int n_bodies)
{{
    int i = blockIdx.x * blockDim.x + threadIdx.x;
    if (i >= n_bodies) return;

    {T} dt = meta[META_DT];
    {T} half_dt = ({T})0.5 * dt;
    {T} vx = vel[2 * i] + half_dt * acc[2 * i];
    {T} vy = vel[2 * i + 1] + half_dt * acc[2 * i + 1];
    pos[2 * i] += dt * vx;
    pos[2 * i + 1] += dt * vy;
    vel[2 * i] = vx + half_dt * acc[2 * i];
    vel[2 * i + 1] = vy + half_dt * acc[2 * i + 1];
}}
'''

LBVH_PIPELINE_TEMPLATE = '\n'.join([
    _MORTON_KERNEL_TEMPLATE,
    _BUILD_KERNEL_TEMPLATE,
    _FILL_KERNEL_TEMPLATE,
    _BH_FORCE_KERNEL_TEMPLATE,
    _LEAPFROG_KERNEL_TEMPLATE,
])

LBVH_KERNEL_NAMES = (
    'morton_codes_kernel',
    'build_lbvh_kernel',
    'fill_lbvh_kernel',
    'bh_accelerations_kernel',
    'leapfrog_kernel',
)
